"""Run a unit of work as a single committed transaction with bounded retries."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from mysterybox_api.core.settings import settings
from mysterybox_api.observability.boxes import get_box_store
from mysterybox_api.services.boxes.errors import BoxEngineError, TransientConflictError

ResultT = TypeVar("ResultT")
Operation = Callable[[AsyncSession], Awaitable[ResultT]]

_TRANSIENT_ERRORS = (TransientConflictError, StaleDataError, OperationalError)


async def run_atomic(
    session: AsyncSession,
    operation: Operation[ResultT],
    *,
    label: str,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> ResultT:
    """Execute ``operation`` and commit, or roll everything back.

    Lock contention and optimistic version mismatches re-run the whole
    operation (including any random draws) up to ``attempts`` times before
    surfacing :class:`TransientConflictError`. Domain errors roll back and
    propagate unchanged, except those flagged ``commit_changes`` whose side
    effects are committed before re-raising.
    """

    max_attempts = max(1, attempts or settings.box_conflict_retry_attempts)
    backoff = settings.box_conflict_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    store = get_box_store()

    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation(session)
            await session.commit()
            return result
        except _TRANSIENT_ERRORS as exc:
            await session.rollback()
            if attempt >= max_attempts:
                logger.warning(
                    "Atomic unit exhausted conflict retries",
                    operation=label,
                    attempts=attempt,
                    error=str(exc),
                )
                store.record_failure(label, TransientConflictError.code)
                raise TransientConflictError(label, attempts=attempt) from exc
            store.record_conflict_retry(label)
            logger.warning(
                "Atomic unit conflicted, retrying",
                operation=label,
                attempt=attempt,
                error=str(exc),
            )
            if backoff:
                await asyncio.sleep(backoff * attempt)
        except BoxEngineError as exc:
            if exc.commit_changes:
                await session.commit()
            else:
                await session.rollback()
            store.record_failure(label, exc.code)
            logger.warning("Atomic unit rejected", operation=label, code=exc.code, error=str(exc))
            raise
        except Exception:
            await session.rollback()
            raise

    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["run_atomic"]
