import json
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()
os.environ.setdefault("TRACING_ENABLED", "false")

from salon_rewards_api import models  # noqa: E402,F401
from salon_rewards_api.app import create_app  # noqa: E402
from salon_rewards_api.core.settings import Settings  # noqa: E402
from salon_rewards_api.db.base import Base  # noqa: E402
from salon_rewards_api.db.session import get_session  # noqa: E402
from salon_rewards_api.models.location import Location  # noqa: E402
from salon_rewards_api.observability.webhooks import get_webhook_store  # noqa: E402
from salon_rewards_api.services.jobs.queue import WebhookJobQueue  # noqa: E402
from salon_rewards_api.services.logs.application_log import ApplicationLogWriter  # noqa: E402
from salon_rewards_api.services.notifications import (  # noqa: E402
    InMemoryEmailBackend,
    InMemoryPushBackend,
    InMemorySMSBackend,
    NotificationService,
)
from salon_rewards_api.services.square.client import SquareClient  # noqa: E402
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime  # noqa: E402
from salon_rewards_api.services.webhooks.signature import compute_signature  # noqa: E402

SIGNATURE_KEY = "test-signature-key"
NOTIFICATION_URL = "https://example.test/webhooks/square"
LOCATION_ID = "LOC1"
MERCHANT_ID = "MERCHANT1"
ORGANIZATION_ID = "org-1"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _error(status: int, code: str, detail: str) -> httpx.Response:
    return httpx.Response(status, json={"errors": [{"category": "INVALID_REQUEST_ERROR", "code": code, "detail": detail}]})


class FakeSquare:
    """Stateful stand-in for the Square REST endpoints the service calls.

    Mutating calls honour ``idempotency_key`` the way Square does: a replay
    returns the original response without applying the change twice.
    """

    def __init__(self) -> None:
        self.gift_cards: dict[str, dict[str, Any]] = {}
        self.activities: list[dict[str, Any]] = []
        self.orders: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.custom_attributes: dict[str, dict[str, Any]] = {}
        self.locations: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, dict[str, Any]]] = []
        self.failures: dict[tuple[str, str], int] = {}
        self.rejected_activity_types: set[str] = set()
        self.activate_on_create = False
        self._replays: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._counter = 0

    # fixtures helpers

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def add_customer(self, customer_id: str, **fields: Any) -> dict[str, Any]:
        customer = {"id": customer_id, **fields}
        self.customers[customer_id] = customer
        return customer

    def add_gift_card(self, *, state: str = "ACTIVE", balance: int = 0, gan: str | None = None) -> dict[str, Any]:
        number = self._next()
        card_id = f"gftc:{number:04d}"
        card = {
            "id": card_id,
            "type": "DIGITAL",
            "gan_source": "SQUARE",
            "state": state,
            "gan": gan or f"7783{number:012d}",
            "balance_money": {"amount": balance, "currency": "USD"},
            "customer_ids": [],
            "digital_details": {"pass_kit_url": f"https://pass.test/{card_id}"},
        }
        self.gift_cards[card_id] = card
        return card

    def add_redemption(self, card_id: str, amount: int, *, payment_id: str | None = None, order_id: str | None = None) -> dict[str, Any]:
        card = self.gift_cards[card_id]
        card["balance_money"]["amount"] -= amount
        activity = {
            "id": f"gcact:{self._next():04d}",
            "type": "REDEEM",
            "gift_card_id": card_id,
            "gift_card_gan": card["gan"],
            "created_at": _now(),
            "gift_card_balance_money": dict(card["balance_money"]),
            "redeem_activity_details": {
                "amount_money": {"amount": amount, "currency": "USD"},
                "payment_id": payment_id,
                "order_id": order_id,
            },
        }
        self.activities.append(activity)
        return activity

    def fail(self, method: str, path_prefix: str, status: int = 500) -> None:
        self.failures[(method, path_prefix)] = status

    def calls(self, method: str, path_prefix: str) -> list[dict[str, Any]]:
        return [body for m, path, body in self.requests if m == method and path.startswith(path_prefix)]

    def activities_of(self, card_id: str, activity_type: str | None = None) -> list[dict[str, Any]]:
        return [
            activity
            for activity in self.activities
            if activity["gift_card_id"] == card_id and (activity_type is None or activity["type"] == activity_type)
        ]

    # transport

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        method = request.method
        path = request.url.path
        self.requests.append((method, path, body))

        for (fail_method, prefix), status in self.failures.items():
            if method == fail_method and path.startswith(prefix):
                return _error(status, "INTERNAL_SERVER_ERROR", f"Injected failure for {prefix}")

        key = body.get("idempotency_key") if isinstance(body, dict) else None
        replay_key = (method, path, key) if key else None
        if replay_key and replay_key in self._replays:
            return httpx.Response(200, json=self._replays[replay_key])

        response = self._route(method, path, body, request.url.params)
        if replay_key and response.status_code < 400:
            self._replays[replay_key] = json.loads(response.content)
        return response

    def _route(self, method: str, path: str, body: dict[str, Any], params) -> httpx.Response:
        if path == "/v2/gift-cards" and method == "POST":
            card = self.add_gift_card(state="PENDING")
            return httpx.Response(200, json={"gift_card": card})
        if path == "/v2/gift-cards/activities" and method == "POST":
            return self._create_activity(body.get("gift_card_activity") or {})
        if path == "/v2/gift-cards/activities" and method == "GET":
            activities = [
                activity
                for activity in self.activities
                if activity["gift_card_id"] == params.get("gift_card_id")
                and (not params.get("type") or activity["type"] == params.get("type"))
            ]
            return httpx.Response(200, json={"gift_card_activities": activities})

        match = re.fullmatch(r"/v2/gift-cards/([^/]+)/link-customer", path)
        if match and method == "POST":
            card = self.gift_cards.get(match.group(1))
            if card is None:
                return _error(404, "NOT_FOUND", "Gift card not found")
            if body["customer_id"] not in card["customer_ids"]:
                card["customer_ids"].append(body["customer_id"])
            return httpx.Response(200, json={"gift_card": card})

        match = re.fullmatch(r"/v2/gift-cards/([^/]+)", path)
        if match and method == "GET":
            card = self.gift_cards.get(match.group(1))
            if card is None:
                return _error(404, "NOT_FOUND", "Gift card not found")
            return httpx.Response(200, json={"gift_card": card})

        if path == "/v2/orders" and method == "POST":
            order = dict(body["order"])
            order["id"] = f"order:{self._next():04d}"
            order["state"] = "OPEN"
            order["paid"] = False
            self.orders[order["id"]] = order
            return httpx.Response(200, json={"order": order})

        if path == "/v2/payments" and method == "POST":
            order = self.orders.get(body.get("order_id"))
            if order is None:
                return _error(400, "NOT_FOUND", "Order not found")
            order["paid"] = True
            payment = {
                "id": f"pay:{self._next():04d}",
                "status": "COMPLETED",
                "order_id": order["id"],
                "amount_money": body.get("amount_money"),
            }
            self.payments[payment["id"]] = payment
            return httpx.Response(200, json={"payment": payment})

        match = re.fullmatch(r"/v2/customers/([^/]+)/custom-attributes", path)
        if match and method == "GET":
            values = self.custom_attributes.get(match.group(1), {})
            return httpx.Response(
                200, json={"custom_attributes": [{"key": key, "value": value} for key, value in values.items()]}
            )

        match = re.fullmatch(r"/v2/customers/([^/]+)/custom-attributes/([^/]+)", path)
        if match and method == "POST":
            customer_id, key = match.groups()
            value = body["custom_attribute"]["value"]
            self.custom_attributes.setdefault(customer_id, {})[key] = value
            return httpx.Response(200, json={"custom_attribute": {"key": key, "value": value}})

        match = re.fullmatch(r"/v2/customers/([^/]+)", path)
        if match:
            customer = self.customers.get(match.group(1))
            if customer is None:
                return _error(404, "NOT_FOUND", "Customer not found")
            if method == "PUT":
                customer.update(body)
            return httpx.Response(200, json={"customer": customer})

        match = re.fullmatch(r"/v2/locations/([^/]+)", path)
        if match and method == "GET":
            location = self.locations.get(match.group(1))
            if location is None:
                return _error(404, "NOT_FOUND", "Location not found")
            return httpx.Response(200, json={"location": location})

        return _error(404, "NOT_FOUND", f"No fake route for {method} {path}")

    def _create_activity(self, activity: dict[str, Any]) -> httpx.Response:
        activity_type = activity.get("type")
        if activity_type in self.rejected_activity_types:
            return _error(400, "INVALID_REQUEST", f"{activity_type} rejected")
        card = self.gift_cards.get(activity.get("gift_card_id"))
        if card is None:
            return _error(404, "NOT_FOUND", "Gift card not found")

        if activity_type == "ACTIVATE":
            if card["state"] != "PENDING":
                return _error(400, "GIFT_CARD_ALREADY_ACTIVATED", "Gift card is already active")
            details = activity.get("activate_activity_details") or {}
            if details.get("order_id"):
                order = self.orders.get(details["order_id"])
                if order is None or not order["paid"]:
                    return _error(400, "ORDER_NOT_PAID", "Order must be paid before activation")
                line = next(
                    (item for item in order["line_items"] if item["uid"] == details.get("line_item_uid")),
                    None,
                )
                if line is None:
                    return _error(400, "INVALID_LINE_ITEM", "Line item not found")
                amount = int(line["base_price_money"]["amount"])
            else:
                amount = int(details["amount_money"]["amount"])
            card["state"] = "ACTIVE"
        elif activity_type == "ADJUST_INCREMENT":
            details = activity.get("adjust_increment_activity_details") or {}
            amount = int(details["amount_money"]["amount"])
            card["state"] = "ACTIVE"
        else:
            return _error(400, "UNSUPPORTED_ACTIVITY", f"Unsupported activity {activity_type}")

        card["balance_money"]["amount"] += amount
        recorded = {
            **activity,
            "id": f"gcact:{self._next():04d}",
            "gift_card_gan": card["gan"],
            "created_at": _now(),
            "gift_card_balance_money": dict(card["balance_money"]),
        }
        self.activities.append(recorded)
        return httpx.Response(200, json={"gift_card_activity": recorded})


@pytest.fixture(autouse=True)
def reset_webhook_store():
    store = get_webhook_store()
    store.reset()
    yield
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def tableless_engine():
    """In-memory database with no tables, as if migrations never ran."""

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def tableless_factory(tableless_engine):
    return async_sessionmaker(tableless_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def fake_square() -> FakeSquare:
    return FakeSquare()


@pytest_asyncio.fixture
async def square_client(fake_square):
    client = SquareClient(
        access_token="test-token",
        base_url="https://square.test",
        transport=httpx.MockTransport(fake_square),
    )
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        square_access_token="test-token",
        square_location_id=LOCATION_ID,
        square_webhook_signature_key=SIGNATURE_KEY,
        square_webhook_notification_url=NOTIFICATION_URL,
        referral_base_url="https://studio.test/ref",
        business_name="Studio Test",
        admin_notification_emails=["owner@studio.test"],
        pass_kit_poll_interval_seconds=0,
        pass_kit_poll_attempts=1,
    )


@pytest.fixture
def email_backend() -> InMemoryEmailBackend:
    return InMemoryEmailBackend()


@pytest.fixture
def sms_backend() -> InMemorySMSBackend:
    return InMemorySMSBackend()


@pytest.fixture
def push_backend() -> InMemoryPushBackend:
    return InMemoryPushBackend()


@pytest.fixture
def notifications(email_backend, sms_backend, push_backend, square_client, test_settings) -> NotificationService:
    return NotificationService(
        email_backend=email_backend,
        sms_backend=sms_backend,
        push_backend=push_backend,
        square=square_client,
        settings=test_settings,
    )


def build_runtime(session_factory, square_client, notifications, settings, *, queue_enabled: bool) -> WebhookRuntime:
    return WebhookRuntime.build(
        session_factory,
        square=square_client,
        notifications=notifications,
        jobs=WebhookJobQueue(session_factory, enabled=queue_enabled),
        app_logs=ApplicationLogWriter(session_factory, enabled=False),
        settings=settings,
    )


@pytest_asyncio.fixture
async def seeded_location(session_factory):
    async with session_factory() as session:
        session.add(
            Location(
                square_location_id=LOCATION_ID,
                square_merchant_id=MERCHANT_ID,
                organization_id=ORGANIZATION_ID,
                name="Main studio",
            )
        )
        await session.commit()
    return LOCATION_ID


@pytest_asyncio.fixture
async def runtime(session_factory, square_client, notifications, test_settings, seeded_location):
    """Runtime with the job queue disabled, so webhooks process inline."""

    return build_runtime(session_factory, square_client, notifications, test_settings, queue_enabled=False)


@pytest_asyncio.fixture
async def queued_runtime(session_factory, square_client, notifications, test_settings, seeded_location):
    return build_runtime(session_factory, square_client, notifications, test_settings, queue_enabled=True)


def _app_for(runtime: WebhookRuntime, session_factory):
    app = create_app(runtime=runtime)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    return app


@pytest_asyncio.fixture
async def app_with_db(runtime, session_factory):
    app = _app_for(runtime, session_factory)
    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def queued_app(queued_runtime, session_factory):
    app = _app_for(queued_runtime, session_factory)
    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


def signed_headers(body: str, *, url: str = NOTIFICATION_URL, secret: str = SIGNATURE_KEY) -> dict[str, str]:
    return {
        "content-type": "application/json",
        "x-square-hmacsha256-signature": compute_signature(body, url, secret),
    }


@pytest.fixture
def post_webhook():
    """Send a correctly signed Square webhook to the app."""

    async def _post(app, event: dict[str, Any]) -> httpx.Response:
        body = json.dumps(event)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="https://example.test") as client:
            return await client.post("/webhooks/square", content=body, headers=signed_headers(body))

    return _post


def square_event(event_type: str, object_key: str, resource: dict[str, Any], *, event_id: str = "evt-1") -> dict[str, Any]:
    return {
        "merchant_id": MERCHANT_ID,
        "type": event_type,
        "event_id": event_id,
        "created_at": _now(),
        "data": {"type": object_key, "id": resource.get("id"), "object": {object_key: resource}},
    }


@pytest.fixture
def make_event():
    return square_event
