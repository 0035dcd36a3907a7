from __future__ import annotations

import httpx
import pytest

from salon_rewards_api.services.square.client import SquareAPIError, SquareClient


@pytest.mark.asyncio
async def test_requests_carry_auth_and_version_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"location": {"id": "LOC1", "merchant_id": "M1"}})

    client = SquareClient(
        access_token="secret-token",
        base_url="https://square.test/",
        api_version="2024-10-17",
        transport=httpx.MockTransport(handler),
    )
    try:
        location = await client.retrieve_location("LOC1")
    finally:
        await client.aclose()

    assert location["merchant_id"] == "M1"
    assert seen[0].url == httpx.URL("https://square.test/v2/locations/LOC1")
    assert seen[0].headers["Authorization"] == "Bearer secret-token"
    assert seen[0].headers["Square-Version"] == "2024-10-17"


@pytest.mark.asyncio
async def test_error_responses_raise_square_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"errors": [{"code": "INVALID_REQUEST", "detail": "Gift card is already active"}]},
        )

    client = SquareClient(access_token="t", base_url="https://square.test", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(SquareAPIError) as excinfo:
            await client.create_gift_card_activity(idempotency_key="k", activity={"type": "ACTIVATE"})
    finally:
        await client.aclose()

    error = excinfo.value
    assert error.operation == "create_gift_card_activity"
    assert error.status_code == 400
    assert error.codes == ["INVALID_REQUEST"]
    assert str(error) == "Gift card is already active"


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = SquareClient(access_token="t", base_url="https://square.test", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(SquareAPIError) as excinfo:
            await client.retrieve_customer("CUST1")
    finally:
        await client.aclose()

    assert excinfo.value.status_code is None
    assert excinfo.value.operation == "retrieve_customer"


@pytest.mark.asyncio
async def test_custom_attributes_follow_cursor() -> None:
    pages = {
        None: {"custom_attributes": [{"key": "a", "value": "1"}], "cursor": "next"},
        "next": {"custom_attributes": [{"key": "b", "value": "2"}]},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[request.url.params.get("cursor")])

    client = SquareClient(access_token="t", base_url="https://square.test", transport=httpx.MockTransport(handler))
    try:
        attributes = await client.list_customer_custom_attributes("CUST1")
    finally:
        await client.aclose()

    assert [item["key"] for item in attributes] == ["a", "b"]


@pytest.mark.asyncio
async def test_gift_card_calls_against_fake_square(square_client, fake_square) -> None:
    card = await square_client.create_gift_card(idempotency_key="card-1", location_id="LOC1")
    replay = await square_client.create_gift_card(idempotency_key="card-1", location_id="LOC1")
    assert card["id"] == replay["id"]
    assert card["state"] == "PENDING"

    activity = await square_client.create_gift_card_activity(
        idempotency_key="act-1",
        activity={
            "gift_card_id": card["id"],
            "type": "ACTIVATE",
            "location_id": "LOC1",
            "activate_activity_details": {"amount_money": {"amount": 1000, "currency": "USD"}},
        },
    )
    assert activity["gift_card_balance_money"]["amount"] == 1000

    await square_client.link_customer_to_gift_card(card["id"], "CUST1")
    refreshed = await square_client.retrieve_gift_card(card["id"])
    assert refreshed["customer_ids"] == ["CUST1"]
    assert refreshed["state"] == "ACTIVE"


def test_client_requires_base_url() -> None:
    with pytest.raises(ValueError):
        SquareClient(access_token="t", base_url="")
