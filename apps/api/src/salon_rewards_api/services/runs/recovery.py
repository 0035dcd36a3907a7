"""Re-enqueue workflow runs that finished in ``error`` status."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loguru import logger

from salon_rewards_api.models.workflow_run import WorkflowRunStatus
from salon_rewards_api.services.jobs.queue import WebhookJobQueue
from salon_rewards_api.services.webhooks.stages import STAGE_BY_EVENT, token

from .tracker import RunTracker


async def requeue_error_runs(
    tracker: RunTracker,
    queue: WebhookJobQueue,
    *,
    limit: int = 50,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Put errored runs back on the job queue using their stored webhook payload."""

    summary: dict[str, Any] = {"scanned": 0, "requeued": 0, "skipped": 0, "correlation_ids": []}
    if not await queue.is_available():
        logger.warning("Job queue unavailable; cannot requeue error runs")
        summary["error"] = "queue-unavailable"
        return summary

    runs = await tracker.list_runs(status=WorkflowRunStatus.ERROR, limit=limit)
    for run in runs:
        summary["scanned"] += 1
        stage = STAGE_BY_EVENT.get(run.square_event_type or "")
        if stage is None or not run.payload:
            summary["skipped"] += 1
            logger.info(
                "Skipping error run without replayable payload",
                correlation_id=run.correlation_id,
                event_type=run.square_event_type,
            )
            continue
        if dry_run:
            summary["requeued"] += 1
            summary["correlation_ids"].append(run.correlation_id)
            continue
        context = dict(run.context or {})
        context.update({"resumed": True, "previous_stage": run.stage, "previous_error": run.last_error})
        await queue.enqueue(
            correlation_id=run.correlation_id,
            stage=stage,
            payload=run.payload,
            trigger_type=run.trigger_type or "unknown",
            context=context,
        )
        await tracker.update_stage(
            run.correlation_id,
            stage=token(stage, "queued"),
            status=WorkflowRunStatus.QUEUED,
            resumed_at=datetime.now(timezone.utc),
        )
        summary["requeued"] += 1
        summary["correlation_ids"].append(run.correlation_id)

    logger.info("Error run requeue finished", dry_run=dry_run, **{k: v for k, v in summary.items() if k != "correlation_ids"})
    return summary


__all__ = ["requeue_error_runs"]
