"""Webhook job execution helpers.

Shared by the in-process worker, the cron drain endpoint and the Celery task so
every runner settles jobs (complete, retry with backoff, or error) the same way.
"""

from __future__ import annotations

import asyncio
import os
import socket
from typing import Any
from uuid import UUID

from loguru import logger

from salon_rewards_api.models.webhook_job import WebhookJobStatus
from salon_rewards_api.services.jobs.queue import QueuedJob
from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime

MAX_ERRORS_PER_DRAIN = 3


def default_owner(prefix: str = "worker") -> str:
    return f"{prefix}:{socket.gethostname()}:{os.getpid()}"


async def run_job(job: QueuedJob, *, router: EventRouter, runtime: WebhookRuntime) -> dict[str, Any]:
    """Execute one locked job and settle it; never raises for pipeline failures."""

    logger.info(
        "Processing webhook job",
        job_id=str(job.id),
        correlation_id=job.correlation_id,
        stage=job.stage,
        attempt=job.attempts,
    )
    try:
        result = await router.process_job(job)
    except Exception as exc:
        status = await runtime.jobs.fail(job, exc)
        event_type = (job.context or {}).get("squareEventType")
        if event_type:
            runtime.observability.record_failure(event_type, str(exc))
        return {"jobId": str(job.id), "stage": job.stage, "status": status, "error": str(exc)}
    await runtime.jobs.complete(job.id)
    return {"jobId": str(job.id), "stage": job.stage, "status": WebhookJobStatus.COMPLETED.value, "result": result}


async def drain_jobs(
    *,
    runtime: WebhookRuntime,
    owner: str | None = None,
    limit: int | None = None,
    max_errors: int = MAX_ERRORS_PER_DRAIN,
    router: EventRouter | None = None,
) -> dict[str, Any]:
    """Lock and run queued jobs one at a time, stopping after ``max_errors`` failures."""

    owner = owner or default_owner("drain")
    limit = limit or runtime.settings.webhook_jobs_per_cron_run
    router = router or EventRouter(runtime)
    summary: dict[str, Any] = {"processed": 0, "succeeded": 0, "failed": 0, "jobs": []}
    if not await runtime.jobs.is_available():
        summary["skipped"] = "queue-unavailable"
        return summary

    while summary["processed"] < limit and summary["failed"] < max_errors:
        locked = await runtime.jobs.lock_next(owner, limit=1)
        if not locked:
            break
        outcome = await run_job(locked[0], router=router, runtime=runtime)
        summary["processed"] += 1
        summary["jobs"].append(outcome)
        if outcome["status"] == WebhookJobStatus.COMPLETED.value:
            summary["succeeded"] += 1
        else:
            summary["failed"] += 1

    if summary["failed"] >= max_errors:
        logger.warning("Stopping job drain after repeated failures", owner=owner, failed=summary["failed"])
    return summary


async def process_job(job_id: UUID, *, runtime: WebhookRuntime | None = None) -> dict[str, Any]:
    """Claim and run one job by id; a job already claimed elsewhere is reported as skipped."""

    runtime = runtime or WebhookRuntime.build_default()
    job = await runtime.jobs.lock(job_id, default_owner("celery"))
    if job is None:
        return {"jobId": str(job_id), "status": "skipped"}
    outcome = await run_job(job, router=EventRouter(runtime), runtime=runtime)
    await runtime.notifications.flush()
    return outcome


def process_job_sync(job_id: str | UUID) -> dict[str, Any]:
    """Convenience wrapper so Celery/cron integrations can call the async runner."""

    return asyncio.run(process_job(UUID(str(job_id))))


__all__ = ["MAX_ERRORS_PER_DRAIN", "default_owner", "drain_jobs", "process_job", "process_job_sync", "run_job"]
