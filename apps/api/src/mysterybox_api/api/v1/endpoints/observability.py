"""Observability endpoints for the box economy."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from mysterybox_api.api.dependencies.security import require_internal_api_key
from mysterybox_api.observability.boxes import get_box_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/boxes",
    dependencies=[Depends(require_internal_api_key)],
    summary="Box economy observability snapshot",
)
async def get_box_snapshot() -> dict[str, object]:
    """Aggregated purchase, open, failure and sweep counters (requires internal API key)."""
    return get_box_store().snapshot().as_dict()
