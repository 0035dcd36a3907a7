"""Square webhook receiver for referral, booking and payment events."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger

from salon_rewards_api.api.dependencies.runtime import get_event_router, get_webhook_runtime
from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime
from salon_rewards_api.services.webhooks.signature import (
    SignatureVerifier,
    build_request_url,
    extract_signature,
)

router = APIRouter(prefix="/webhooks/square", tags=["square-webhooks"])


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@router.post("")
async def square_webhook(
    request: Request,
    runtime: WebhookRuntime = Depends(get_webhook_runtime),
    event_router: EventRouter = Depends(get_event_router),
) -> JSONResponse:
    """Verify the Square signature, then route the event to its pipeline."""

    body = await request.body()
    signature = extract_signature(request.headers)
    if not signature:
        runtime.observability.record_signature_failure()
        logger.warning("Square webhook rejected: missing signature header")
        return _error(status.HTTP_401_UNAUTHORIZED, "Missing signature")

    secret = runtime.settings.square_webhook_signature_key
    if not secret:
        logger.error("Square webhook signature key is not configured")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook secret not configured")

    verifier = SignatureVerifier(secret, configured_url=runtime.settings.square_webhook_notification_url)
    verification = verifier.verify(body, signature, build_request_url(request.headers, request.url.path))
    if not verification.valid:
        runtime.observability.record_signature_failure()
        if runtime.settings.enable_signature_debug:
            return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature", debug=verification.debug_payload())
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    try:
        event = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Square webhook body is not valid JSON", body_length=len(body))
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")
    if not isinstance(event, dict):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")

    try:
        result = await event_router.route(event)
    except Exception:
        # Acknowledge so Square does not redeliver; the failure is in the logs.
        logger.bind(persist=True, log_type="webhook", status="error").exception(
            "Unhandled Square webhook error",
            event_type=event.get("type"),
            event_id=event.get("event_id"),
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "error": "Internal server error",
                "acknowledged": True,
                "message": "Webhook received but processing encountered an error",
            },
        )
    finally:
        await runtime.notifications.flush()

    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.body))


@router.get("")
async def square_webhook_liveness() -> dict[str, str]:
    return {
        "message": "Square Referral Webhook Handler",
        "status": "active",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
