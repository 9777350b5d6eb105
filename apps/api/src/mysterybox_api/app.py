from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from mysterybox_api.core.settings import settings
from mysterybox_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import BoxExpiryWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    expiry_worker = BoxExpiryWorker(
        session_factory=_session_factory,
        interval_seconds=settings.box_expiry_interval_seconds,
        batch_size=settings.box_expiry_batch_size,
        trigger_label=settings.box_expiry_trigger_label,
    )
    app.state.box_expiry_worker = expiry_worker

    expiry_enabled = settings.box_expiry_worker_enabled
    if expiry_enabled:
        expiry_worker.start()
        logger.info(
            "Box expiry worker enabled",
            interval_seconds=expiry_worker.interval_seconds,
            batch_size=settings.box_expiry_batch_size,
        )
    else:
        logger.info(
            "Box expiry worker disabled",
            reason="box_expiry_worker_enabled is false",
        )

    try:
        yield
    finally:
        if expiry_enabled and expiry_worker.is_running:
            await expiry_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the mystery box FastAPI service."""
    configure_logging(
        service_name="mysterybox-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Mystery Box API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="mysterybox-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
