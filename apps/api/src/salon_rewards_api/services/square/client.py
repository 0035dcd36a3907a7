"""Thin async REST client for the Square endpoints used by the referral program."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Mapping

import httpx
from loguru import logger

from salon_rewards_api.core.settings import settings


class SquareAPIError(RuntimeError):
    """Raised when Square returns a non-2xx response or is unreachable."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.errors = errors or []

    @property
    def codes(self) -> list[str]:
        return [str(item.get("code")) for item in self.errors if item.get("code")]


class SquareClient:
    """Wraps the Gift Cards, Orders, Payments, Customers and Locations APIs."""

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str,
        api_version: str | None = None,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Square base URL must be configured")
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version or settings.square_api_version
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls) -> "SquareClient":
        return cls(
            access_token=settings.square_access_token,
            base_url=settings.square_base_url,
            api_version=settings.square_api_version,
            timeout_seconds=settings.square_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # Gift cards

    async def create_gift_card(self, *, idempotency_key: str, location_id: str) -> dict[str, Any]:
        body = {
            "idempotency_key": idempotency_key,
            "location_id": location_id,
            "gift_card": {"type": "DIGITAL"},
        }
        data = await self._request("POST", "/v2/gift-cards", operation="create_gift_card", json=body)
        return data.get("gift_card") or {}

    async def retrieve_gift_card(self, gift_card_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/gift-cards/{gift_card_id}", operation="retrieve_gift_card")
        return data.get("gift_card") or {}

    async def create_gift_card_activity(
        self,
        *,
        idempotency_key: str,
        activity: Mapping[str, Any],
    ) -> dict[str, Any]:
        body = {"idempotency_key": idempotency_key, "gift_card_activity": dict(activity)}
        data = await self._request(
            "POST",
            "/v2/gift-cards/activities",
            operation="create_gift_card_activity",
            json=body,
        )
        return data.get("gift_card_activity") or {}

    async def link_customer_to_gift_card(self, gift_card_id: str, customer_id: str) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/v2/gift-cards/{gift_card_id}/link-customer",
            operation="link_customer_to_gift_card",
            json={"customer_id": customer_id},
        )
        return data.get("gift_card") or {}

    async def list_gift_card_activities(
        self,
        *,
        gift_card_id: str,
        activity_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"gift_card_id": gift_card_id, "limit": limit}
        if activity_type:
            params["type"] = activity_type
        data = await self._request(
            "GET",
            "/v2/gift-cards/activities",
            operation="list_gift_card_activities",
            params=params,
        )
        return list(data.get("gift_card_activities") or [])

    # Orders and payments

    async def create_order(self, *, idempotency_key: str, order: Mapping[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/v2/orders",
            operation="create_order",
            json={"idempotency_key": idempotency_key, "order": dict(order)},
        )
        return data.get("order") or {}

    async def create_payment(self, payment: Mapping[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/v2/payments", operation="create_payment", json=dict(payment))
        return data.get("payment") or {}

    # Customers

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/customers/{customer_id}", operation="retrieve_customer")
        return data.get("customer") or {}

    async def update_customer(self, customer_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "PUT",
            f"/v2/customers/{customer_id}",
            operation="update_customer",
            json=dict(fields),
        )
        return data.get("customer") or {}

    async def list_customer_custom_attributes(self, customer_id: str) -> list[dict[str, Any]]:
        attributes: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"with_definitions": "false"}
            if cursor:
                params["cursor"] = cursor
            data = await self._request(
                "GET",
                f"/v2/customers/{customer_id}/custom-attributes",
                operation="list_customer_custom_attributes",
                params=params,
            )
            attributes.extend(data.get("custom_attributes") or [])
            cursor = data.get("cursor")
            if not cursor:
                return attributes

    async def upsert_customer_custom_attribute(
        self,
        customer_id: str,
        key: str,
        value: Any,
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"custom_attribute": {"value": value}}
        if idempotency_key:
            body["idempotency_key"] = idempotency_key
        data = await self._request(
            "POST",
            f"/v2/customers/{customer_id}/custom-attributes/{key}",
            operation="upsert_customer_custom_attribute",
            json=body,
        )
        return data.get("custom_attribute") or {}

    # Locations

    async def retrieve_location(self, location_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/locations/{location_id}", operation="retrieve_location")
        return data.get("location") or {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Square request failed", operation=operation, error=str(exc))
            raise SquareAPIError(f"Square {operation} request failed: {exc}", operation=operation) from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            errors = data.get("errors") if isinstance(data.get("errors"), list) else []
            logger.warning(
                "Square API returned an error",
                operation=operation,
                status=response.status_code,
                errors=errors,
            )
            detail = errors[0].get("detail") if errors and isinstance(errors[0], dict) else None
            raise SquareAPIError(
                detail or f"Square {operation} responded with HTTP {response.status_code}",
                operation=operation,
                status_code=response.status_code,
                errors=errors,
            )
        return data

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_seconds,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Square-Version": self._api_version,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        return self._client


@lru_cache
def get_square_client() -> SquareClient:
    """Process-wide client built from settings on first use."""

    return SquareClient.from_settings()


__all__ = ["SquareAPIError", "SquareClient", "get_square_client"]
