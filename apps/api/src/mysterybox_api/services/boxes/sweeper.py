"""Batch expiry of unopened boxes past their retention window."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from loguru import logger
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.core.settings import settings
from mysterybox_api.observability.boxes import get_box_store
from mysterybox_api.services.atomic import run_atomic
from mysterybox_api.services.boxes.lifecycle import BoxLifecycleService, utcnow

tracer = trace.get_tracer(__name__)


@dataclass(frozen=True, slots=True)
class SweepSummary:
    scanned: int
    expired: int
    failed: int

    def as_dict(self) -> dict[str, int]:
        return {"scanned": self.scanned, "expired": self.expired, "failed": self.failed}


async def sweep_expired_boxes(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    attempts: int | None = None,
) -> SweepSummary:
    """Expire every PURCHASED box whose ``expires_at`` is at or before ``now``.

    Each box transitions in its own atomic unit; a failing row is logged,
    counted and left behind by the ``(expires_at, id)`` cursor for the rest of
    the run. Re-running with nothing due changes nothing.
    """

    reference = now or utcnow()
    limit = batch_size or settings.box_expiry_batch_size
    service = BoxLifecycleService(session)
    cursor: tuple[datetime, UUID] | None = None
    scanned = 0
    expired = 0
    failed = 0

    with tracer.start_as_current_span("boxes.sweep") as span:
        while True:
            batch = await service.list_due_expirations(now=reference, limit=limit, after=cursor)
            await session.commit()
            if not batch:
                break

            last_id, last_expires_at = batch[-1]
            cursor = (last_expires_at, last_id)
            for transaction_id, _ in batch:
                scanned += 1
                try:
                    changed = await run_atomic(
                        session,
                        lambda db, tid=transaction_id: BoxLifecycleService(db).expire_box(tid, now=reference),
                        label="boxes.expire",
                        attempts=attempts,
                    )
                except Exception:
                    failed += 1
                    logger.exception("Failed to expire box", transaction_id=str(transaction_id))
                    continue
                if changed:
                    expired += 1

        summary = SweepSummary(scanned=scanned, expired=expired, failed=failed)
        span.set_attribute("box.sweep.scanned", summary.scanned)
        span.set_attribute("box.sweep.expired", summary.expired)
        span.set_attribute("box.sweep.failed", summary.failed)

    get_box_store().record_sweep(expired=expired, failed=failed)
    logger.info("Box expiry sweep finished", **summary.as_dict())
    return summary


__all__ = ["SweepSummary", "sweep_expired_boxes"]
