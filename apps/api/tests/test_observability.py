from __future__ import annotations

import httpx
import pytest

from salon_rewards_api.core.settings import settings
from salon_rewards_api.observability.tracing import parse_otlp_headers
from salon_rewards_api.observability.webhooks import WebhookObservabilityStore


async def _snapshot(app, headers: dict[str, str] | None = None) -> httpx.Response:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="https://example.test") as client:
        return await client.get("/observability/webhooks", headers=headers or {})


def test_store_counts_by_bucket_and_event_type() -> None:
    store = WebhookObservabilityStore()
    store.record_received("booking.created", "evt-1")
    store.record_received("booking.created", "evt-2")
    store.record_processed("booking.created")
    store.record_failure("payment.created", "square timeout")
    store.record_signature_failure()

    snapshot = store.snapshot()

    assert snapshot.totals["received"] == {"booking.created": 2}
    assert snapshot.totals["processed"] == {"booking.created": 1}
    assert snapshot.totals["failed"] == {"payment.created": 1}
    assert snapshot.signature_failures == 1
    assert snapshot.events.last_event_id == "evt-2"
    assert snapshot.events.last_failure_reason == "square timeout"

    store.reset()
    cleared = store.snapshot()
    assert cleared.signature_failures == 0
    assert cleared.totals["received"] == {}
    assert cleared.events.last_event_at is None


@pytest.mark.asyncio
async def test_webhook_snapshot_endpoint(app_with_db, post_webhook, make_event) -> None:
    app, _ = app_with_db
    await post_webhook(app, make_event("team_member.created", "team_member", {"id": "TM1"}, event_id="evt-9"))

    response = await _snapshot(app)

    assert response.status_code == 200
    payload = response.json()
    assert payload["totals"]["received"] == {"team_member.created": 1}
    assert payload["totals"]["ignored"] == {"team_member.created": 1}
    assert payload["signature_failures"] == 0
    assert payload["events"]["last_event_id"] == "evt-9"
    assert payload["events"]["last_event_at"] is not None


@pytest.mark.asyncio
async def test_webhook_snapshot_requires_cron_secret(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "cron_secret", "snapshot-key")

    assert (await _snapshot(app)).status_code == 401
    assert (await _snapshot(app, {"x-cron-secret": "snapshot-key"})).status_code == 200


def test_otlp_header_parsing() -> None:
    assert parse_otlp_headers(None) is None
    assert parse_otlp_headers("api-key=abc, x-team = salon ,broken,=empty") == {"api-key": "abc", "x-team": "salon"}
