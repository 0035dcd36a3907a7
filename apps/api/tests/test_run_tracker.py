from __future__ import annotations

import pytest

from salon_rewards_api.db.base import Base
from salon_rewards_api.models.workflow_run import WorkflowRun, WorkflowRunStatus
from salon_rewards_api.services.runs.availability import TableAvailability, is_missing_relation_error
from salon_rewards_api.services.runs.tracker import MAX_ERROR_LENGTH, RunTracker, truncate_error


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_ensure_run_creates_then_updates_supplied_fields(session_factory) -> None:
    tracker = RunTracker(session_factory)

    created = await tracker.ensure_run(
        "booking-created:abc",
        trigger_type="booking.created",
        square_event_id="evt-1",
        square_event_type="booking.created",
        resource_id="BKG1",
        stage="booking:start",
        status=WorkflowRunStatus.RUNNING,
        payload={"id": "BKG1"},
    )
    assert created is not None
    assert created.status == "running"

    updated = await tracker.ensure_run("booking-created:abc", stage="booking:completed", resource_id=None)
    assert updated is not None
    assert updated.stage == "booking:completed"
    # Unsupplied (None) fields are left untouched.
    assert updated.resource_id == "BKG1"
    assert updated.payload == {"id": "BKG1"}
    assert updated.square_event_id == "evt-1"


@pytest.mark.asyncio
async def test_ensure_run_rejects_unknown_fields(session_factory) -> None:
    tracker = RunTracker(session_factory)
    with pytest.raises(TypeError):
        await tracker.ensure_run("cid", colour="blue")


@pytest.mark.asyncio
async def test_ensure_run_without_correlation_id_is_a_noop(session_factory) -> None:
    tracker = RunTracker(session_factory)
    assert await tracker.ensure_run(None, stage="x") is None
    assert await tracker.ensure_run("", stage="x") is None


@pytest.mark.asyncio
async def test_update_stage_increments_attempts_and_clears_error(session_factory) -> None:
    tracker = RunTracker(session_factory)
    await tracker.ensure_run("cid-1", stage="payment:start", status=WorkflowRunStatus.RUNNING)

    await tracker.mark_error("cid-1", RuntimeError("square down"), stage="payment:error")
    errored = await tracker.get_run("cid-1")
    assert errored.status == "error"
    assert errored.last_error == "square down"
    assert errored.stage == "payment:error"

    await tracker.update_stage("cid-1", stage="referrer_reward:issuing", increment_attempts=True)
    await tracker.update_stage("cid-1", increment_attempts=True)
    run = await tracker.update_stage(
        "cid-1", stage="payment:completed", status=WorkflowRunStatus.COMPLETED, clear_error=True
    )
    assert run.attempts == 2
    assert run.status == "completed"
    assert run.last_error is None


@pytest.mark.asyncio
async def test_update_stage_for_unknown_run_returns_none(session_factory) -> None:
    tracker = RunTracker(session_factory)
    assert await tracker.update_stage("missing", stage="x") is None
    assert await tracker.update_stage("cid") is None


@pytest.mark.asyncio
async def test_list_runs_filters_by_status(session_factory) -> None:
    tracker = RunTracker(session_factory)
    await tracker.ensure_run("a", status=WorkflowRunStatus.ERROR)
    await tracker.ensure_run("b", status=WorkflowRunStatus.COMPLETED)
    await tracker.ensure_run("c", status="error")

    runs = await tracker.list_runs(status=WorkflowRunStatus.ERROR)
    assert sorted(run.correlation_id for run in runs) == ["a", "c"]


def test_truncate_error_limits_length() -> None:
    message = truncate_error("x" * (MAX_ERROR_LENGTH + 50))
    assert len(message) == MAX_ERROR_LENGTH + 1
    assert message.endswith("…")
    assert truncate_error(None) == "unknown-error"
    assert truncate_error(ValueError()) == "ValueError"


@pytest.mark.asyncio
async def test_tracker_degrades_when_table_missing(tableless_factory) -> None:
    tracker = RunTracker(tableless_factory)

    assert await tracker.ensure_run("cid", stage="booking:start") is None
    assert await tracker.update_stage("cid", stage="booking:completed") is None
    assert await tracker.mark_error("cid", "boom") is None
    assert await tracker.list_runs() == []
    assert tracker.availability.cached_status is False


@pytest.mark.asyncio
async def test_availability_recovers_after_unavailable_ttl(tableless_engine, tableless_factory) -> None:
    engine, factory = tableless_engine, tableless_factory
    clock = FakeClock()
    availability = TableAvailability(
        WorkflowRun.__tablename__,
        factory,
        ttl_seconds=60,
        unavailable_ttl_seconds=10,
        clock=clock,
    )

    assert await availability.is_available() is False

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    clock.now += 5
    assert await availability.is_available() is False  # still cached

    clock.now += 10
    assert await availability.is_available() is True

    tracker = RunTracker(factory, availability=availability)
    run = await tracker.ensure_run("cid", stage="booking:start")
    assert run is not None


def test_missing_relation_detection_matches_driver_messages() -> None:
    assert is_missing_relation_error(Exception('relation "giftcard_runs" does not exist'), "giftcard_runs")
    assert is_missing_relation_error(Exception("no such table: giftcard_runs"), "giftcard_runs")
    assert not is_missing_relation_error(Exception("no such table: other"), "giftcard_runs")
    assert not is_missing_relation_error(None, "giftcard_runs")
