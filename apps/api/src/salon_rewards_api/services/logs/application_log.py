"""Fire-and-forget persistence of structured log records into ``application_logs``."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from salon_rewards_api.core.logging import redact_fields
from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.application_log import ApplicationLog
from salon_rewards_api.services.runs.availability import (
    SessionFactory,
    TableAvailability,
    is_missing_relation_error,
    open_session,
)
from salon_rewards_api.services.runs.tracker import truncate_error

LOG_TABLE = ApplicationLog.__tablename__
_RECORD_KEYS = {"persist", "log_type", "log_id", "status", "organization_id"}


class ApplicationLogWriter:
    """Writes log rows on the running loop without blocking the caller.

    The table has its own availability cache, separate from the run tracker,
    and write failures are logged (never persisted) and never propagated.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        enabled: bool | None = None,
        availability: TableAvailability | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.enabled = settings.application_log_enabled if enabled is None else enabled
        self.availability = availability or TableAvailability(
            LOG_TABLE,
            session_factory,
            ttl_seconds=settings.run_tracker_availability_ttl_seconds,
            unavailable_ttl_seconds=settings.run_tracker_unavailable_ttl_seconds,
        )
        self._pending: set[asyncio.Task] = set()
        self._sink_id: int | None = None

    async def write(
        self,
        log_type: str,
        *,
        log_id: str | None = None,
        status: str | None = None,
        organization_id: str | None = None,
        payload: dict[str, Any] | None = None,
        error: BaseException | str | None = None,
    ) -> bool:
        if not self.enabled or not await self.availability.is_available():
            return False
        row = ApplicationLog(
            log_type=log_type,
            log_id=log_id,
            status=status,
            organization_id=organization_id,
            payload=redact_fields(dict(payload or {})),
            error=truncate_error(error) if error is not None else None,
        )
        try:
            session = await open_session(self._session_factory)
            async with session as db:
                db.add(row)
                await db.commit()
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc, LOG_TABLE):
                self.availability.mark_unavailable(exc)
            else:
                logger.bind(persist=False).warning(
                    "Application log write failed", log_type=log_type, error=str(exc)
                )
            return False
        return True

    def schedule(self, log_type: str, **fields: Any) -> asyncio.Task | None:
        """Queue ``write`` on the running loop; no-op outside an event loop."""

        if not self.enabled:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self.write(log_type, **fields))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def sink(self, message) -> None:
        """Loguru sink persisting records bound with ``persist=True``."""

        record = message.record
        extra = dict(record["extra"])
        if not extra.get("persist"):
            return
        payload = {key: value for key, value in extra.items() if key not in _RECORD_KEYS}
        payload["message"] = record["message"]
        payload["level"] = record["level"].name.lower()
        exception = record["exception"]
        self.schedule(
            str(extra.get("log_type") or "webhook"),
            log_id=extra.get("log_id"),
            status=extra.get("status"),
            organization_id=extra.get("organization_id"),
            payload=payload,
            error=exception.value if exception is not None and exception.value is not None else None,
        )

    def install(self) -> None:
        if self._sink_id is not None or not self.enabled:
            return
        self._sink_id = logger.add(
            self.sink,
            level="INFO",
            filter=lambda record: bool(record["extra"].get("persist")),
            backtrace=False,
            diagnose=False,
        )

    def uninstall(self) -> None:
        if self._sink_id is None:
            return
        logger.remove(self._sink_id)
        self._sink_id = None

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["ApplicationLogWriter"]
