"""Celery wiring for handing queued webhook jobs to broker workers.

Redis doubles as broker and result backend unless the Celery URLs are set.
Jobs stay in the database either way, so a broker outage only delays them
until the next cron drain or polling worker pass.
"""

from __future__ import annotations

from celery import Celery

from salon_rewards_api.core.settings import settings

broker_url = settings.celery_broker_url or settings.redis_url
result_backend_url = settings.celery_result_backend or settings.redis_url

celery_app = Celery("salon_rewards_api", broker=broker_url, backend=result_backend_url)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    task_routes={"webhook_jobs.*": {"queue": settings.webhook_job_task_queue}},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Jobs carry their own lock and retry bookkeeping, so ack only after the run.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    broker_connection_retry_on_startup=True,
)

celery_app.autodiscover_tasks(["salon_rewards_api.celery_tasks"])

__all__ = ["celery_app"]
