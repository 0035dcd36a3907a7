from __future__ import annotations

import io
import json

from loguru import logger

from salon_rewards_api.core.logging import JsonSink, redact_fields


def test_redact_fields_masks_nested_secrets() -> None:
    cleaned = redact_fields(
        {
            "event_type": "payment.created",
            "headers": {"Authorization": "Bearer sq0atp", "x-request-id": "r-1"},
            "signature": "",
        }
    )

    assert cleaned["headers"] == {"Authorization": "***", "x-request-id": "r-1"}
    assert cleaned["signature"] == ""
    assert cleaned["event_type"] == "payment.created"


def test_json_sink_writes_identity_and_context() -> None:
    stream = io.StringIO()
    handler_id = logger.add(
        JsonSink(service_name="salon-rewards-api", environment="development", version="test", stream=stream)
    )
    try:
        logger.bind(correlation_id="booking-created:abc", access_token="sq0atp").warning("Gift card not funded")
    finally:
        logger.remove(handler_id)

    entry = json.loads(stream.getvalue().strip())
    assert entry["message"] == "Gift card not funded"
    assert entry["level"] == "warning"
    assert entry["service"] == "salon-rewards-api"
    assert entry["correlation_id"] == "booking-created:abc"
    assert entry["access_token"] == "***"
    assert "trace_id" not in entry
