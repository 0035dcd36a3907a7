"""Durable webhook job queue backed by ``giftcard_jobs``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.webhook_job import WebhookJob, WebhookJobStatus
from salon_rewards_api.services.runs.availability import (
    SessionFactory,
    TableAvailability,
    is_missing_relation_error,
    open_session,
)
from salon_rewards_api.services.runs.tracker import truncate_error

JOB_TABLE = WebhookJob.__tablename__
BASE_BACKOFF_MS = 5_000
MAX_BACKOFF_MS = 5 * 60 * 1_000
STALE_LOCK_AFTER = timedelta(minutes=10)


def compute_backoff(attempts: int) -> timedelta:
    """Exponential retry delay: 5s, 10s, 20s ... capped at five minutes."""

    exponent = max(attempts - 1, 0)
    delay_ms = min(BASE_BACKOFF_MS * (2**exponent), MAX_BACKOFF_MS)
    return timedelta(milliseconds=delay_ms)


@dataclass(slots=True)
class QueuedJob:
    """Detached snapshot of a job handed to a processor."""

    id: UUID
    correlation_id: str
    trigger_type: str
    stage: str
    payload: Any
    context: dict[str, Any] | None
    attempts: int
    max_attempts: int

    @classmethod
    def from_model(cls, job: WebhookJob) -> "QueuedJob":
        return cls(
            id=job.id,
            correlation_id=job.correlation_id,
            trigger_type=job.trigger_type,
            stage=job.stage,
            payload=job.payload,
            context=dict(job.context or {}),
            attempts=job.attempts or 0,
            max_attempts=job.max_attempts or settings.webhook_job_max_attempts,
        )


class WebhookJobQueue:
    """Enqueue, lock and settle webhook stage jobs.

    Like the run tracker, every call uses its own session and the table is
    probed through ``TableAvailability``; callers fall back to synchronous
    processing when ``is_available`` is false.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        enabled: bool | None = None,
        max_attempts: int | None = None,
        availability: TableAvailability | None = None,
        clock=None,
    ) -> None:
        self._session_factory = session_factory
        self.enabled = settings.webhook_job_queue_enabled if enabled is None else enabled
        self.max_attempts = max_attempts or settings.webhook_job_max_attempts
        self.availability = availability or TableAvailability(
            JOB_TABLE,
            session_factory,
            ttl_seconds=settings.run_tracker_availability_ttl_seconds,
            unavailable_ttl_seconds=settings.run_tracker_unavailable_ttl_seconds,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def is_available(self, *, force: bool = False) -> bool:
        if not self.enabled:
            return False
        return await self.availability.is_available(force=force)

    async def enqueue(
        self,
        *,
        correlation_id: str,
        stage: str,
        payload: Any,
        trigger_type: str = "unknown",
        context: dict[str, Any] | None = None,
        delay: timedelta | None = None,
    ) -> QueuedJob | None:
        """Insert a queued job, or reset the existing (correlation_id, stage) row to queued."""

        if not await self.is_available():
            return None
        scheduled_at = self._clock() + (delay or timedelta(0))
        try:
            return await self._upsert(
                correlation_id=correlation_id,
                stage=stage,
                payload=payload,
                trigger_type=trigger_type,
                context=context,
                scheduled_at=scheduled_at,
            )
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc, JOB_TABLE):
                self.availability.mark_unavailable(exc)
                return None
            raise

    async def lock_next(self, owner: str, *, limit: int = 1) -> list[QueuedJob]:
        """Claim up to ``limit`` due jobs for ``owner`` and mark them running."""

        if limit <= 0 or not await self.is_available():
            return []
        now = self._clock()
        stale_before = now - STALE_LOCK_AFTER
        session = await open_session(self._session_factory)
        async with session as db:
            result = await db.execute(
                select(WebhookJob)
                .where(
                    or_(
                        WebhookJob.status == WebhookJobStatus.QUEUED.value,
                        (WebhookJob.status == WebhookJobStatus.RUNNING.value)
                        & (WebhookJob.locked_at < stale_before),
                    ),
                    WebhookJob.scheduled_at <= now,
                )
                .order_by(WebhookJob.scheduled_at.asc())
                .limit(limit)
            )
            candidates = list(result.scalars().all())
            claimed: list[QueuedJob] = []
            for job in candidates:
                # Conditional update so two workers never claim the same row.
                outcome = await db.execute(
                    update(WebhookJob)
                    .where(WebhookJob.id == job.id, WebhookJob.status == job.status)
                    .values(
                        status=WebhookJobStatus.RUNNING.value,
                        locked_at=now,
                        lock_owner=owner,
                        attempts=WebhookJob.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount:
                    await db.refresh(job)
                    claimed.append(QueuedJob.from_model(job))
            await db.commit()
        if claimed:
            logger.info("Locked webhook jobs", owner=owner, count=len(claimed))
        return claimed

    async def lock(self, job_id: UUID, owner: str) -> QueuedJob | None:
        """Claim one specific job if it is still queued; used by the Celery task."""

        if not await self.is_available():
            return None
        now = self._clock()
        session = await open_session(self._session_factory)
        async with session as db:
            outcome = await db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id, WebhookJob.status == WebhookJobStatus.QUEUED.value)
                .values(
                    status=WebhookJobStatus.RUNNING.value,
                    locked_at=now,
                    lock_owner=owner,
                    attempts=WebhookJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if not outcome.rowcount:
                return None
            job = await db.get(WebhookJob, job_id, populate_existing=True)
            return QueuedJob.from_model(job) if job is not None else None

    async def complete(self, job_id: UUID) -> None:
        await self._settle(
            job_id,
            status=WebhookJobStatus.COMPLETED.value,
            locked_at=None,
            lock_owner=None,
            last_error=None,
        )

    async def fail(self, job: QueuedJob, error: BaseException | str) -> str:
        """Reschedule with backoff, or mark ``error`` once attempts are exhausted."""

        message = truncate_error(error)
        if job.attempts >= job.max_attempts:
            await self._settle(
                job.id,
                status=WebhookJobStatus.ERROR.value,
                locked_at=None,
                lock_owner=None,
                last_error=message,
            )
            logger.error(
                "Webhook job exhausted retries",
                job_id=str(job.id),
                correlation_id=job.correlation_id,
                stage=job.stage,
                attempts=job.attempts,
                error=message,
            )
            return WebhookJobStatus.ERROR.value

        delay = compute_backoff(job.attempts)
        await self._settle(
            job.id,
            status=WebhookJobStatus.QUEUED.value,
            locked_at=None,
            lock_owner=None,
            last_error=message,
            scheduled_at=self._clock() + delay,
        )
        logger.warning(
            "Webhook job failed; retry scheduled",
            job_id=str(job.id),
            correlation_id=job.correlation_id,
            stage=job.stage,
            attempts=job.attempts,
            retry_in_seconds=delay.total_seconds(),
            error=message,
        )
        return WebhookJobStatus.QUEUED.value

    async def get(self, job_id: UUID) -> WebhookJob | None:
        session = await open_session(self._session_factory)
        async with session as db:
            return await db.get(WebhookJob, job_id, populate_existing=True)

    async def find(self, correlation_id: str, stage: str) -> WebhookJob | None:
        session = await open_session(self._session_factory)
        async with session as db:
            result = await db.execute(
                select(WebhookJob)
                .where(WebhookJob.correlation_id == correlation_id, WebhookJob.stage == stage)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def _upsert(
        self,
        *,
        correlation_id: str,
        stage: str,
        payload: Any,
        trigger_type: str,
        context: dict[str, Any] | None,
        scheduled_at: datetime,
    ) -> QueuedJob:
        session = await open_session(self._session_factory)
        async with session as db:
            result = await db.execute(
                select(WebhookJob).where(
                    WebhookJob.correlation_id == correlation_id,
                    WebhookJob.stage == stage,
                )
            )
            job = result.scalar_one_or_none()
            if job is None:
                job = WebhookJob(
                    correlation_id=correlation_id,
                    stage=stage,
                    trigger_type=trigger_type or "unknown",
                    status=WebhookJobStatus.QUEUED.value,
                    payload=payload,
                    context=context,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    scheduled_at=scheduled_at,
                )
                db.add(job)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info(
                        "Detected concurrent job enqueue",
                        correlation_id=correlation_id,
                        stage=stage,
                    )
                    return await self._upsert(
                        correlation_id=correlation_id,
                        stage=stage,
                        payload=payload,
                        trigger_type=trigger_type,
                        context=context,
                        scheduled_at=scheduled_at,
                    )
                logger.info("Webhook job enqueued", correlation_id=correlation_id, stage=stage)
                return QueuedJob.from_model(job)

            job.status = WebhookJobStatus.QUEUED.value
            job.payload = payload
            job.context = context
            job.trigger_type = trigger_type or job.trigger_type
            job.attempts = 0
            job.scheduled_at = scheduled_at
            job.locked_at = None
            job.lock_owner = None
            job.last_error = None
            await db.commit()
            logger.info("Webhook job requeued", correlation_id=correlation_id, stage=stage)
            return QueuedJob.from_model(job)

    async def _settle(self, job_id: UUID, **values: Any) -> None:
        session = await open_session(self._session_factory)
        async with session as db:
            await db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()


__all__ = [
    "BASE_BACKOFF_MS",
    "MAX_BACKOFF_MS",
    "QueuedJob",
    "WebhookJobQueue",
    "compute_backoff",
]
