from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.core.settings import settings
from mysterybox_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as error:
        components["database"] = ComponentStatus(status="error", detail=str(error))
        status = "error"

    expiry_worker = getattr(request.app.state, "box_expiry_worker", None)
    if settings.box_expiry_worker_enabled and expiry_worker is not None:
        running = bool(getattr(expiry_worker, "is_running", False))
        worker_status: Literal["ready", "starting"] = "ready" if running else "starting"
        if not running and status == "ready":
            status = "degraded"
        components["box_expiry_worker"] = ComponentStatus(
            status=worker_status,
            detail=None if running else "Box expiry worker not running",
        )
    else:
        components["box_expiry_worker"] = ComponentStatus(
            status="disabled",
            detail="Box expiry worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
