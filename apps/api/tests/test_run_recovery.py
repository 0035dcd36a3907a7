from __future__ import annotations

import pytest

from salon_rewards_api.models.workflow_run import WorkflowRunStatus
from salon_rewards_api.services.jobs.queue import WebhookJobQueue
from salon_rewards_api.services.runs.recovery import requeue_error_runs
from salon_rewards_api.services.runs.tracker import RunTracker


@pytest.fixture
def tracker(session_factory) -> RunTracker:
    return RunTracker(session_factory)


@pytest.fixture
def queue(session_factory) -> WebhookJobQueue:
    return WebhookJobQueue(session_factory, enabled=True)


async def _seed_runs(tracker: RunTracker) -> None:
    await tracker.ensure_run(
        "booking-created:aaa",
        trigger_type="booking.created",
        square_event_type="booking.created",
        stage="friend_reward:error",
        status=WorkflowRunStatus.ERROR,
        payload={"id": "BKG1", "customer_id": "CUST1"},
        context={"customerId": "CUST1"},
    )
    await tracker.mark_error("booking-created:aaa", "Failed to create friend gift card", stage="friend_reward:error")
    await tracker.ensure_run(
        "customer-created:bbb",
        trigger_type="customer.created",
        square_event_type="customer.created",
        stage="customer_ingest:error",
        status=WorkflowRunStatus.ERROR,
    )
    await tracker.ensure_run(
        "payment-created:ccc",
        square_event_type="payment.created",
        stage="payment:completed",
        status=WorkflowRunStatus.COMPLETED,
        payload={"id": "PAY1"},
    )


@pytest.mark.asyncio
async def test_error_runs_are_requeued_with_resume_context(tracker, queue) -> None:
    await _seed_runs(tracker)

    summary = await requeue_error_runs(tracker, queue)

    assert (summary["scanned"], summary["requeued"], summary["skipped"]) == (2, 1, 1)
    assert summary["correlation_ids"] == ["booking-created:aaa"]

    job = await queue.find("booking-created:aaa", "booking")
    assert job.status == "queued"
    assert job.payload == {"id": "BKG1", "customer_id": "CUST1"}
    assert job.context["customerId"] == "CUST1"
    assert job.context["resumed"] is True
    assert job.context["previous_stage"] == "friend_reward:error"
    assert job.context["previous_error"] == "Failed to create friend gift card"

    run = await tracker.get_run("booking-created:aaa")
    assert (run.stage, run.status) == ("booking:queued", "queued")
    assert run.resumed_at is not None


@pytest.mark.asyncio
async def test_dry_run_leaves_queue_untouched(tracker, queue) -> None:
    await _seed_runs(tracker)

    summary = await requeue_error_runs(tracker, queue, dry_run=True)

    assert summary["requeued"] == 1
    assert await queue.find("booking-created:aaa", "booking") is None
    run = await tracker.get_run("booking-created:aaa")
    assert run.status == "error"


@pytest.mark.asyncio
async def test_requeue_needs_the_job_queue(tracker, session_factory) -> None:
    await _seed_runs(tracker)

    summary = await requeue_error_runs(tracker, WebhookJobQueue(session_factory, enabled=False))

    assert summary["error"] == "queue-unavailable"
    assert summary["scanned"] == 0
