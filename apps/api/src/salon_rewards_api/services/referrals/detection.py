"""Locate a referral code on an inbound booking or on the customer's Square profile."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping

from loguru import logger

from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.services.square.client import SquareAPIError, SquareClient

ReferrerLookup = Callable[[str], Awaitable[SquareCustomer | None]]

SOURCE_CAPABILITY_DETAILS = "service_variation_capability_details"
SOURCE_BOOKING_FIELDS = "booking.custom_fields"
SOURCE_SEGMENT_FIELDS = "appointment_segments.custom_fields"
SOURCE_CUSTOMER_ATTRIBUTES = "customer.custom_attributes"

MAX_CODE_LENGTH = 20
MAX_CODE_WORDS = 3


@dataclass(slots=True)
class DetectedReferral:
    code: str
    source: str
    referrer: SquareCustomer


def _looks_like_referral_key(name: str) -> bool:
    lowered = name.lower()
    return "referral" in lowered or "ref" in lowered


def _plausible_code(value: str) -> bool:
    return 0 < len(value) <= MAX_CODE_LENGTH and len(value.split(" ")) <= MAX_CODE_WORDS


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _field_candidates(fields: Iterable[Any]) -> list[str]:
    candidates: list[str] = []
    for field in fields:
        if not isinstance(field, Mapping):
            continue
        name = str(_first(field, "name", "label", "title") or "")
        key = str(_first(field, "booking_custom_field_id", "custom_field_id", "key") or "")
        raw = _first(field, "string_value", "stringValue", "text_value", "value")
        if not isinstance(raw, str) or not raw.strip():
            continue
        value = raw.strip()
        if _looks_like_referral_key(name) or _looks_like_referral_key(key) or _plausible_code(value):
            candidates.append(value)
    return candidates


def _segments(booking: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    segments = booking.get("appointment_segments") or booking.get("appointmentSegments") or []
    return [segment for segment in segments if isinstance(segment, Mapping)]


class ReferralCodeDetector:
    """Checks capability details, booking fields, segment fields then customer attributes.

    A candidate only counts when ``lookup`` resolves it to a referrer.
    """

    def __init__(self, square: SquareClient, lookup: ReferrerLookup) -> None:
        self._square = square
        self._lookup = lookup

    async def detect(self, booking: Mapping[str, Any], customer_id: str) -> DetectedReferral | None:
        for source, candidates in (
            (SOURCE_CAPABILITY_DETAILS, self._capability_candidates(booking)),
            (SOURCE_BOOKING_FIELDS, _field_candidates(booking.get("custom_fields") or booking.get("customFields") or [])),
            (SOURCE_SEGMENT_FIELDS, self._segment_candidates(booking)),
        ):
            found = await self._first_valid(candidates, source)
            if found is not None:
                return found
        return await self._from_customer_attributes(customer_id)

    def _capability_candidates(self, booking: Mapping[str, Any]) -> list[str]:
        details = booking.get("service_variation_capability_details") or booking.get(
            "serviceVariationCapabilityDetails"
        )
        values = details.get("values") if isinstance(details, Mapping) else None
        if not isinstance(values, Mapping):
            return []
        return [
            value.strip()
            for key, value in values.items()
            if _looks_like_referral_key(str(key)) and isinstance(value, str) and value.strip()
        ]

    def _segment_candidates(self, booking: Mapping[str, Any]) -> list[str]:
        candidates: list[str] = []
        for segment in _segments(booking):
            candidates.extend(_field_candidates(segment.get("custom_fields") or segment.get("customFields") or []))
        return candidates

    async def _first_valid(self, candidates: Iterable[str], source: str) -> DetectedReferral | None:
        for candidate in candidates:
            referrer = await self._lookup(candidate)
            if referrer is not None:
                logger.info("Referral code detected", source=source, referrer_id=referrer.square_customer_id)
                return DetectedReferral(code=candidate, source=source, referrer=referrer)
            logger.debug("Candidate value is not a referral code", source=source)
        return None

    async def _from_customer_attributes(self, customer_id: str) -> DetectedReferral | None:
        try:
            attributes = await self._square.list_customer_custom_attributes(customer_id)
        except SquareAPIError as exc:
            logger.warning("Unable to list customer custom attributes", customer_id=customer_id, error=str(exc))
            return None

        values: dict[str, str] = {}
        for attribute in attributes:
            key = attribute.get("key")
            value = attribute.get("value")
            if key and isinstance(value, str) and value.strip():
                values[str(key)] = value.strip()

        if "referral_code" in values:
            found = await self._first_valid([values["referral_code"]], f"{SOURCE_CUSTOMER_ATTRIBUTES}[referral_code]")
            if found is not None:
                return found

        for key, value in values.items():
            if key == "referral_code" or not _plausible_code(value):
                continue
            found = await self._first_valid([value], f"{SOURCE_CUSTOMER_ATTRIBUTES}[{key}]")
            if found is not None:
                return found
        return None


__all__ = [
    "DetectedReferral",
    "ReferralCodeDetector",
    "SOURCE_BOOKING_FIELDS",
    "SOURCE_CAPABILITY_DETAILS",
    "SOURCE_CUSTOMER_ATTRIBUTES",
    "SOURCE_SEGMENT_FIELDS",
]
