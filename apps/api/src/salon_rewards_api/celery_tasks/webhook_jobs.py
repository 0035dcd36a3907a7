from __future__ import annotations

from loguru import logger

from salon_rewards_api.celery_app import celery_app
from salon_rewards_api.core.settings import settings
from salon_rewards_api.services.jobs.queue import QueuedJob
from salon_rewards_api.tasks.webhook_jobs import process_job_sync


@celery_app.task(
    name="webhook_jobs.process_job",
    queue=settings.webhook_job_task_queue,
)
def process_webhook_job(job_id: str) -> dict[str, object]:
    """Celery entrypoint for running a single queued webhook job."""

    try:
        return process_job_sync(job_id)
    except Exception as exc:  # pragma: no cover
        logger.exception("Webhook job task failed", job_id=job_id)
        raise exc


def dispatch_to_celery(job: QueuedJob) -> None:
    """Hand a freshly queued job to a Celery worker; polling remains the fallback."""

    process_webhook_job.delay(str(job.id))
    logger.info("Webhook job dispatched to Celery", job_id=str(job.id), stage=job.stage)


__all__ = ["dispatch_to_celery", "process_webhook_job"]
