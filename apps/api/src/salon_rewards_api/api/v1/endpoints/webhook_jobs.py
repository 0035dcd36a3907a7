"""Cron-triggered drain of the webhook job queue."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends
from loguru import logger

from salon_rewards_api.api.dependencies.runtime import get_event_router, get_webhook_runtime
from salon_rewards_api.api.dependencies.security import require_cron_secret
from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime
from salon_rewards_api.tasks.webhook_jobs import default_owner, drain_jobs

router = APIRouter(prefix="/webhooks/jobs", tags=["webhook-jobs"])


async def _drain(runtime: WebhookRuntime, event_router: EventRouter) -> dict[str, Any]:
    started = time.monotonic()
    summary = await drain_jobs(runtime=runtime, owner=default_owner("cron"), router=event_router)
    await runtime.notifications.flush()
    summary["durationMs"] = int((time.monotonic() - started) * 1000)
    if summary["succeeded"]:
        summary["message"] = f"Processed {summary['succeeded']} webhook job(s)"
    elif summary["failed"]:
        summary["message"] = f"No jobs processed ({summary['failed']} error(s))"
    else:
        summary["message"] = "No webhook jobs available"
    logger.info(
        "Cron webhook job drain finished",
        processed=summary["processed"],
        failed=summary["failed"],
        duration_ms=summary["durationMs"],
    )
    return summary


@router.post("/drain", dependencies=[Depends(require_cron_secret)])
async def drain_webhook_jobs(
    runtime: WebhookRuntime = Depends(get_webhook_runtime),
    event_router: EventRouter = Depends(get_event_router),
) -> dict[str, Any]:
    """Run up to ``webhook_jobs_per_cron_run`` due jobs, stopping after three failures."""

    return await _drain(runtime, event_router)


@router.get("/drain", dependencies=[Depends(require_cron_secret)], include_in_schema=False)
async def drain_webhook_jobs_get(
    runtime: WebhookRuntime = Depends(get_webhook_runtime),
    event_router: EventRouter = Depends(get_event_router),
) -> dict[str, Any]:
    """Schedulers that can only issue GET requests use this alias."""

    return await _drain(runtime, event_router)
