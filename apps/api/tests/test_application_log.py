from __future__ import annotations

import pytest
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from salon_rewards_api.models.application_log import ApplicationLog
from salon_rewards_api.services.logs.application_log import ApplicationLogWriter


async def _rows(session_factory) -> list[ApplicationLog]:
    async with session_factory() as session:
        return list((await session.execute(select(ApplicationLog))).scalars().all())


@pytest.mark.asyncio
async def test_write_persists_redacted_payload(session_factory) -> None:
    writer = ApplicationLogWriter(session_factory, enabled=True)

    written = await writer.write(
        "webhook",
        log_id="booking-created:abc",
        status="error",
        organization_id="org-1",
        payload={"event_type": "booking.created", "signature": "abc123"},
        error=RuntimeError("square timeout"),
    )

    assert written is True
    [row] = await _rows(session_factory)
    assert (row.log_type, row.log_id, row.status, row.organization_id) == (
        "webhook",
        "booking-created:abc",
        "error",
        "org-1",
    )
    assert row.payload == {"event_type": "booking.created", "signature": "***"}
    assert row.error == "square timeout"


@pytest.mark.asyncio
async def test_sink_persists_only_flagged_records(session_factory) -> None:
    writer = ApplicationLogWriter(session_factory, enabled=True)
    writer.install()
    try:
        logger.info("Not persisted", event_type="booking.created")
        logger.bind(persist=True, log_type="friend_reward", log_id="cid-1", status="completed").info(
            "Friend signup bonus issued", customer_id="CUST1"
        )
        await writer.flush()
    finally:
        writer.uninstall()

    [row] = await _rows(session_factory)
    assert (row.log_type, row.log_id, row.status) == ("friend_reward", "cid-1", "completed")
    assert row.payload["message"] == "Friend signup bonus issued"
    assert row.payload["level"] == "info"
    assert row.payload["customer_id"] == "CUST1"
    assert "persist" not in row.payload


@pytest.mark.asyncio
async def test_disabled_writer_does_nothing(session_factory) -> None:
    writer = ApplicationLogWriter(session_factory, enabled=False)

    assert await writer.write("webhook") is False
    assert writer.schedule("webhook") is None
    writer.install()
    writer.uninstall()
    assert await _rows(session_factory) == []


def test_schedule_outside_event_loop_is_a_noop() -> None:
    writer = ApplicationLogWriter(async_sessionmaker(), enabled=True)

    assert writer.schedule("webhook") is None


@pytest.mark.asyncio
async def test_missing_table_is_skipped(tableless_factory) -> None:
    writer = ApplicationLogWriter(tableless_factory, enabled=True)

    assert await writer.write("webhook", payload={"a": 1}) is False
    assert await writer.availability.is_available() is False
