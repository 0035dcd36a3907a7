"""Cached probes telling whether an optional tracking table exists."""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

_MISSING_RELATION_CLASSES = {"UndefinedTableError", "UndefinedColumnError"}


def is_missing_relation_error(error: BaseException | None, relation: str) -> bool:
    """Return True when ``error`` means ``relation`` (or one of its columns) is absent."""

    if error is None:
        return False
    candidates: list[BaseException] = [error]
    original = getattr(error, "orig", None)
    if isinstance(original, BaseException):
        candidates.append(original)
        cause = original.__cause__
        if isinstance(cause, BaseException):
            candidates.append(cause)
    for candidate in candidates:
        if type(candidate).__name__ in _MISSING_RELATION_CLASSES:
            return True
    message = str(error)
    return (
        f'relation "{relation}" does not exist' in message
        or f'missing FROM-clause entry for table "{relation}"' in message
        or f"no such table: {relation}" in message
        or ("no such column" in message and relation in message)
    )


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


class TableAvailability:
    """Probe ``SELECT 1 FROM <table> WHERE 1 = 0`` at most once per TTL window.

    A missing-relation result is cached for the shorter ``unavailable_ttl_seconds``
    so tracking resumes soon after the table is created. Any other probe error is
    logged and reported as available.
    """

    def __init__(
        self,
        table_name: str,
        session_factory: SessionFactory,
        *,
        ttl_seconds: float = 60.0,
        unavailable_ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.table_name = table_name
        self._session_factory = session_factory
        self._ttl_seconds = ttl_seconds
        self._unavailable_ttl_seconds = unavailable_ttl_seconds
        self._clock = clock
        self._status: bool | None = None
        self._checked_at = 0.0
        self._warned = False

    @property
    def cached_status(self) -> bool | None:
        return self._status

    async def is_available(self, *, force: bool = False) -> bool:
        now = self._clock()
        if not force and self._status is not None:
            ttl = self._ttl_seconds if self._status else self._unavailable_ttl_seconds
            if now - self._checked_at < ttl:
                return self._status

        try:
            session = await open_session(self._session_factory)
            async with session as db:
                await db.execute(text(f"SELECT 1 FROM {self.table_name} WHERE 1 = 0"))
        except Exception as exc:
            if is_missing_relation_error(exc, self.table_name):
                self.mark_unavailable(exc)
                return False
            logger.warning(
                "Table availability probe failed; assuming available",
                table=self.table_name,
                error=str(exc),
            )
            self._record(True)
            return True

        if self._status is False:
            logger.info("Table available again", table=self.table_name)
        self._warned = False
        self._record(True)
        return True

    def mark_unavailable(self, error: BaseException | None = None) -> None:
        if not self._warned:
            logger.warning(
                "Table unavailable; skipping writes",
                table=self.table_name,
                error=str(error) if error else None,
            )
            self._warned = True
        self._record(False)

    def reset(self) -> None:
        self._status = None
        self._checked_at = 0.0
        self._warned = False

    def _record(self, status: bool) -> None:
        self._status = status
        self._checked_at = self._clock()


__all__ = ["SessionFactory", "TableAvailability", "is_missing_relation_error", "open_session"]
