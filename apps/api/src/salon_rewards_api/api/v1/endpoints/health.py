from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from salon_rewards_api.api.dependencies.runtime import get_webhook_runtime
from salon_rewards_api.core.settings import settings
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime


router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
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
    runtime: WebhookRuntime = Depends(get_webhook_runtime),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    # Missing tables degrade the service; webhooks still process inline.
    if await runtime.tracker.is_available(force=True):
        components["run_tracker"] = ComponentStatus(status="ready")
    else:
        components["run_tracker"] = ComponentStatus(
            status="degraded",
            detail="giftcard_runs table unavailable; runs are not tracked",
        )
        status = "degraded"

    if not runtime.jobs.enabled:
        components["job_queue"] = ComponentStatus(status="disabled", detail="Job queue disabled via settings")
    elif await runtime.jobs.is_available(force=True):
        components["job_queue"] = ComponentStatus(status="ready")
    else:
        components["job_queue"] = ComponentStatus(
            status="degraded",
            detail="giftcard_jobs table unavailable; webhooks process synchronously",
        )
        status = "degraded"

    worker = getattr(request.app.state, "webhook_job_worker", None)
    if settings.celery_broker_url:
        components["job_worker"] = ComponentStatus(
            status="ready",
            detail=f"Dispatched to Celery queue {settings.webhook_job_task_queue}",
        )
    elif settings.webhook_job_worker_enabled and worker is not None:
        running = bool(getattr(worker, "is_running", False))
        components["job_worker"] = ComponentStatus(
            status="ready" if running else "starting",
            detail=None if running else "Webhook job worker not running",
        )
        if not running:
            status = "degraded"
    else:
        components["job_worker"] = ComponentStatus(
            status="disabled",
            detail="Webhook job worker disabled via settings (cron drain only)",
        )

    return ReadinessPayload(status=status, components=components)
