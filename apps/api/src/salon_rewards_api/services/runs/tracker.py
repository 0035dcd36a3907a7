"""Idempotent persistence of webhook workflow progress (``giftcard_runs``)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.workflow_run import WorkflowRun, WorkflowRunStatus

from .availability import SessionFactory, TableAvailability, is_missing_relation_error, open_session

RUN_TABLE = WorkflowRun.__tablename__
MAX_ERROR_LENGTH = 500

_ENSURE_FIELDS = (
    "trigger_type",
    "square_event_id",
    "square_event_type",
    "resource_id",
    "stage",
    "status",
    "attempts",
    "payload",
    "context",
)


def truncate_error(error: BaseException | str | None) -> str:
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
    elif error is None:
        message = "unknown-error"
    else:
        message = str(error)
    if len(message) > MAX_ERROR_LENGTH:
        return f"{message[:MAX_ERROR_LENGTH]}…"
    return message


class RunTracker:
    """Records stage transitions per correlation id.

    Each write runs in its own short-lived session and commits immediately so
    tracking survives rollbacks of the business transaction. When the table is
    missing every method returns ``None``; other storage errors propagate.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        availability: TableAvailability | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.availability = availability or TableAvailability(
            RUN_TABLE,
            session_factory,
            ttl_seconds=settings.run_tracker_availability_ttl_seconds,
            unavailable_ttl_seconds=settings.run_tracker_unavailable_ttl_seconds,
        )

    async def is_available(self, *, force: bool = False) -> bool:
        return await self.availability.is_available(force=force)

    async def ensure_run(self, correlation_id: str | None, **fields: Any) -> WorkflowRun | None:
        """Insert the run or update only the supplied fields of the existing row."""

        if not correlation_id:
            return None
        unknown = set(fields) - set(_ENSURE_FIELDS)
        if unknown:
            raise TypeError(f"Unsupported run fields: {', '.join(sorted(unknown))}")
        supplied = {key: value for key, value in fields.items() if value is not None}

        if not await self.is_available():
            return None

        try:
            return await self._upsert(correlation_id, supplied)
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc, RUN_TABLE):
                self.availability.mark_unavailable(exc)
                return None
            raise

    async def update_stage(
        self,
        correlation_id: str | None,
        *,
        stage: str | None = None,
        status: WorkflowRunStatus | str | None = None,
        increment_attempts: bool = False,
        last_error: str | None = None,
        clear_error: bool = False,
        payload: Any = None,
        context: dict[str, Any] | None = None,
        resumed_at: datetime | None = None,
    ) -> WorkflowRun | None:
        if not correlation_id:
            return None

        values: dict[str, Any] = {}
        if stage is not None:
            values["stage"] = stage
        if status is not None:
            values["status"] = _status_value(status)
        if increment_attempts:
            values["attempts"] = WorkflowRun.attempts + 1
        if last_error is not None:
            values["last_error"] = last_error
        if clear_error:
            values["last_error"] = None
        if payload is not None:
            values["payload"] = payload
        if context is not None:
            values["context"] = context
        if resumed_at is not None:
            values["resumed_at"] = resumed_at
        if not values:
            return None

        if not await self.is_available():
            return None

        values["updated_at"] = func.now()
        try:
            session = await open_session(self._session_factory)
            async with session as db:
                result = await db.execute(
                    update(WorkflowRun)
                    .where(WorkflowRun.correlation_id == correlation_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if not result.rowcount:
                    return None
                return await _fetch(db, correlation_id)
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc, RUN_TABLE):
                self.availability.mark_unavailable(exc)
                return None
            raise

    async def mark_error(
        self,
        correlation_id: str | None,
        error: BaseException | str | None,
        **overrides: Any,
    ) -> WorkflowRun | None:
        if not correlation_id:
            return None
        patch: dict[str, Any] = {"status": WorkflowRunStatus.ERROR, "last_error": truncate_error(error)}
        patch.update(overrides)
        logger.warning(
            "Workflow run marked as error",
            correlation_id=correlation_id,
            stage=patch.get("stage"),
            error=patch["last_error"],
        )
        return await self.update_stage(correlation_id, **patch)

    async def get_run(self, correlation_id: str) -> WorkflowRun | None:
        if not await self.is_available():
            return None
        session = await open_session(self._session_factory)
        async with session as db:
            return await _fetch(db, correlation_id)

    async def list_runs(
        self,
        *,
        status: WorkflowRunStatus | str | None = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        if not await self.is_available():
            return []
        stmt = select(WorkflowRun).order_by(WorkflowRun.updated_at.asc()).limit(limit)
        if status is not None:
            stmt = stmt.where(WorkflowRun.status == _status_value(status))
        session = await open_session(self._session_factory)
        async with session as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _upsert(self, correlation_id: str, supplied: dict[str, Any]) -> WorkflowRun | None:
        session = await open_session(self._session_factory)
        async with session as db:
            existing = await _fetch(db, correlation_id)
            if existing is None:
                run = WorkflowRun(
                    correlation_id=correlation_id,
                    square_event_id=supplied.get("square_event_id"),
                    square_event_type=supplied.get("square_event_type"),
                    trigger_type=supplied.get("trigger_type") or "unknown",
                    resource_id=supplied.get("resource_id"),
                    stage=supplied.get("stage"),
                    status=_status_value(supplied.get("status") or WorkflowRunStatus.PENDING),
                    attempts=int(supplied.get("attempts") or 0),
                    payload=supplied.get("payload"),
                    context=supplied.get("context"),
                )
                db.add(run)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info("Detected concurrent run creation", correlation_id=correlation_id)
                else:
                    return run

            values = dict(supplied)
            if "status" in values:
                values["status"] = _status_value(values["status"])
            values["updated_at"] = func.now()
            await db.execute(
                update(WorkflowRun)
                .where(WorkflowRun.correlation_id == correlation_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return await _fetch(db, correlation_id)


async def _fetch(db, correlation_id: str) -> WorkflowRun | None:
    result = await db.execute(
        select(WorkflowRun)
        .where(WorkflowRun.correlation_id == correlation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _status_value(status: WorkflowRunStatus | str) -> str:
    if isinstance(status, WorkflowRunStatus):
        return status.value
    return str(status)


__all__ = ["MAX_ERROR_LENGTH", "RunTracker", "truncate_error"]
