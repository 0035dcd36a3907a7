from __future__ import annotations

import httpx
import pytest
from sqlalchemy import select

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.models.webhook_job import WebhookJob
from salon_rewards_api.models.workflow_run import WorkflowRun
from salon_rewards_api.observability.webhooks import get_webhook_store
from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.tasks.webhook_jobs import drain_jobs, process_job
from salon_rewards_api.workers import WebhookJobWorker

from conftest import square_event

ALICE = {
    "id": "CUST_ALICE_1234",
    "given_name": "Alice",
    "family_name": "Smith",
    "email_address": "alice@example.test",
    "phone_number": "+15550100",
}


async def _drain(app, method: str = "POST", headers: dict[str, str] | None = None) -> httpx.Response:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="https://example.test") as client:
        return await client.request(method, "/webhooks/jobs/drain", headers=headers or {})


async def _enqueue_broken(runtime, count: int) -> None:
    for index in range(count):
        await runtime.jobs.enqueue(correlation_id=f"cid-{index}", stage="mystery", payload={})


@pytest.mark.asyncio
async def test_queued_webhook_is_completed_by_cron_drain(queued_app, post_webhook, make_event, email_backend) -> None:
    app, session_factory = queued_app

    response = await post_webhook(app, make_event("customer.created", "customer", ALICE))

    assert response.status_code == 202
    body = response.json()
    assert body["queued"] is True
    assert body["customerId"] == "CUST_ALICE_1234"
    async with session_factory() as session:
        run = (
            await session.execute(select(WorkflowRun).where(WorkflowRun.correlation_id == body["correlationId"]))
        ).scalar_one()
    assert (run.stage, run.status) == ("customer_ingest:queued", "queued")
    assert email_backend.sent_messages == []
    assert get_webhook_store().snapshot().totals["queued"] == {"customer.created": 1}

    drained = await _drain(app)

    assert drained.status_code == 200
    summary = drained.json()
    assert (summary["processed"], summary["succeeded"], summary["failed"]) == (1, 1, 0)
    assert summary["message"] == "Processed 1 webhook job(s)"
    assert summary["jobs"][0]["result"]["personalCode"] == "ALICE1234"

    async with session_factory() as session:
        run = (
            await session.execute(select(WorkflowRun).where(WorkflowRun.correlation_id == body["correlationId"]))
        ).scalar_one()
        job = (await session.execute(select(WebhookJob))).scalar_one()
        customer = (
            await session.execute(select(SquareCustomer).where(SquareCustomer.square_customer_id == "CUST_ALICE_1234"))
        ).scalar_one()
    assert (run.stage, run.status) == ("customer_ingest:completed", "completed")
    assert job.status == "completed"
    assert customer.personal_code == "ALICE1234"
    assert [message["To"] for message in email_backend.sent_messages] == ["alice@example.test"]


@pytest.mark.asyncio
async def test_run_row_exists_before_job_is_enqueued(
    queued_app, queued_runtime, post_webhook, make_event, monkeypatch
) -> None:
    app, _ = queued_app
    original_enqueue = queued_runtime.jobs.enqueue
    runs_at_enqueue = []

    async def enqueue(**kwargs):
        run = await queued_runtime.tracker.get_run(kwargs["correlation_id"])
        runs_at_enqueue.append((run.stage, run.status) if run else None)
        return await original_enqueue(**kwargs)

    monkeypatch.setattr(queued_runtime.jobs, "enqueue", enqueue)

    response = await post_webhook(app, make_event("customer.created", "customer", ALICE))

    assert response.status_code == 202
    assert runs_at_enqueue == [("customer_ingest:queued", "queued")]


@pytest.mark.asyncio
async def test_refused_enqueue_processes_inline(queued_app, queued_runtime, post_webhook, make_event, monkeypatch) -> None:
    app, _ = queued_app

    async def refuse(**kwargs):
        return None

    monkeypatch.setattr(queued_runtime.jobs, "enqueue", refuse)

    response = await post_webhook(app, make_event("customer.created", "customer", ALICE))

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] is True
    run = await queued_runtime.tracker.get_run(body["correlationId"])
    assert (run.stage, run.status) == ("customer_ingest:completed", "completed")


@pytest.mark.asyncio
async def test_empty_drain_reports_nothing_to_do(queued_app) -> None:
    app, _ = queued_app

    response = await _drain(app)

    assert response.status_code == 200
    assert response.json()["message"] == "No webhook jobs available"


@pytest.mark.asyncio
async def test_drain_requires_cron_secret_when_configured(queued_app, monkeypatch) -> None:
    app, _ = queued_app
    monkeypatch.setattr(settings, "cron_secret", "s3cret")

    assert (await _drain(app)).status_code == 401
    assert (await _drain(app, headers={"Authorization": "Bearer wrong"})).status_code == 401
    assert (await _drain(app, headers={"Authorization": "Bearer s3cret"})).status_code == 200
    assert (await _drain(app, headers={"Authorization": "s3cret"})).status_code == 200
    assert (await _drain(app, headers={"x-cron-secret": "s3cret"})).status_code == 200
    assert (await _drain(app, method="GET", headers={"x-cron-key": "s3cret"})).status_code == 200


@pytest.mark.asyncio
async def test_drain_stops_after_repeated_failures(queued_runtime) -> None:
    await _enqueue_broken(queued_runtime, 4)

    summary = await drain_jobs(runtime=queued_runtime, owner="test", limit=10)

    assert (summary["processed"], summary["failed"], summary["succeeded"]) == (3, 3, 0)
    assert summary["jobs"][0]["status"] == "queued"
    assert "Unknown webhook job stage" in summary["jobs"][0]["error"]
    async with queued_runtime.session_factory() as session:
        statuses = sorted((await session.execute(select(WebhookJob.status))).scalars().all())
    assert statuses == ["queued"] * 4


@pytest.mark.asyncio
async def test_drain_honours_limit(queued_runtime) -> None:
    await _enqueue_broken(queued_runtime, 3)

    summary = await drain_jobs(runtime=queued_runtime, owner="test", limit=1)

    assert summary["processed"] == 1


@pytest.mark.asyncio
async def test_drain_skips_when_queue_is_disabled(runtime) -> None:
    summary = await drain_jobs(runtime=runtime, owner="test")

    assert summary["skipped"] == "queue-unavailable"
    assert summary["processed"] == 0


@pytest.mark.asyncio
async def test_worker_run_once_processes_queued_jobs(queued_runtime, fake_square) -> None:
    fake_square.add_customer(ALICE["id"], **{k: v for k, v in ALICE.items() if k != "id"})
    router = EventRouter(queued_runtime)
    routed = await router.route(square_event("customer.created", "customer", ALICE))
    assert routed.status_code == 202

    worker = WebhookJobWorker(queued_runtime, interval_seconds=1, batch_size=5, owner="worker-test")
    summary = await worker.run_once()

    assert summary == {"processed": 1, "succeeded": 1, "failed": 0}
    assert await worker.run_once() == {"processed": 0, "succeeded": 0, "failed": 0}


@pytest.mark.asyncio
async def test_worker_start_and_stop(queued_runtime) -> None:
    worker = WebhookJobWorker(queued_runtime, interval_seconds=1, owner="worker-test")

    worker.start()
    assert worker.is_running is True
    await worker.stop()

    assert worker.is_running is False


@pytest.mark.asyncio
async def test_process_job_by_id_runs_once(queued_runtime) -> None:
    router = EventRouter(queued_runtime)
    await router.route(square_event("customer.created", "customer", ALICE))
    async with queued_runtime.session_factory() as session:
        job = (await session.execute(select(WebhookJob))).scalar_one()

    first = await process_job(job.id, runtime=queued_runtime)
    second = await process_job(job.id, runtime=queued_runtime)

    assert first["status"] == "completed"
    assert second == {"jobId": str(job.id), "status": "skipped"}


@pytest.mark.asyncio
async def test_dispatcher_receives_queued_jobs(queued_runtime) -> None:
    dispatched = []
    router = EventRouter(queued_runtime, dispatcher=dispatched.append)

    result = await router.route(square_event("customer.created", "customer", ALICE))

    assert result.status_code == 202
    assert [job.stage for job in dispatched] == ["customer_ingest"]


@pytest.mark.asyncio
async def test_dispatcher_failure_keeps_job_queued(queued_runtime) -> None:
    def broken(job):
        raise ConnectionError("broker unreachable")

    router = EventRouter(queued_runtime, dispatcher=broken)

    result = await router.route(square_event("customer.created", "customer", ALICE))

    assert result.status_code == 202
    async with queued_runtime.session_factory() as session:
        job = (await session.execute(select(WebhookJob))).scalar_one()
    assert job.status == "queued"
