from fastapi import APIRouter

from .endpoints import (
    health,
    observability,
    square_webhooks,
    webhook_jobs,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(square_webhooks.router)
router.include_router(webhook_jobs.router)
router.include_router(observability.router)
