"""Worker wiring for the box expiry sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.core.settings import settings
from mysterybox_api.models.box import BoxSweepRun
from mysterybox_api.services.boxes.sweeper import sweep_expired_boxes

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class BoxExpiryWorker:
    """Periodically flips overdue PURCHASED boxes to EXPIRED."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.box_expiry_interval_seconds
        self._batch_size = batch_size or settings.box_expiry_batch_size
        self._trigger_label = trigger_label or settings.box_expiry_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Box expiry worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Box expiry worker stopped")

    async def run_once(self, *, triggered_by: str | None = None, now: datetime | None = None) -> Dict[str, int]:
        """Execute a single sweep and persist a run record."""

        trigger = triggered_by or self._trigger_label
        summary: Dict[str, int] = {"scanned": 0, "expired": 0, "failed": 0}

        session = await self._ensure_session()
        async with session as managed_session:
            run = BoxSweepRun(triggered_by=trigger, started_at=datetime.now(timezone.utc))
            managed_session.add(run)
            await managed_session.commit()
            run_id = run.id

            try:
                result = await sweep_expired_boxes(managed_session, now=now, batch_size=self._batch_size)
                summary = result.as_dict()
                run = await managed_session.get(BoxSweepRun, run_id)
                run.status = "completed"
                run.completed_at = datetime.now(timezone.utc)
                run.scanned_count = result.scanned
                run.expired_count = result.expired
                run.failed_count = result.failed
                run.metadata_json = self._build_run_metadata(trigger)
                await managed_session.commit()
                logger.info(
                    "Box expiry sweep completed",
                    run_id=str(run_id),
                    scanned=result.scanned,
                    expired=result.expired,
                    failed=result.failed,
                    trigger=trigger,
                )
            except Exception as exc:
                await managed_session.rollback()
                run = await managed_session.get(BoxSweepRun, run_id)
                run.status = "failed"
                run.completed_at = datetime.now(timezone.utc)
                run.error_message = str(exc)
                run.metadata_json = self._build_run_metadata(trigger, error=str(exc))
                await managed_session.commit()
                logger.exception("Box expiry sweep failed", run_id=str(run_id), error=str(exc))
                raise

        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Box expiry iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    def _build_run_metadata(self, trigger: str, *, error: str | None = None) -> Dict[str, object | None]:
        metadata: Dict[str, object | None] = {
            "batch_size": self._batch_size,
            "triggered_by": trigger,
            "retention_days": settings.box_retention_days,
        }
        if error:
            metadata["error"] = error
        return metadata


__all__ = ["BoxExpiryWorker"]
