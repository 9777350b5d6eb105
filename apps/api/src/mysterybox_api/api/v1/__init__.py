from fastapi import APIRouter

from .endpoints import boxes, credits, health, observability

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(boxes.router)
router.include_router(credits.router)
router.include_router(observability.router)
