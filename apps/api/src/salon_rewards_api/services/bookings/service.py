"""Booking persistence: one row per appointment segment."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_rewards_api.models.booking import Booking


def _get(data: Mapping[str, Any] | None, *keys: str) -> Any:
    if not data:
        return None
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def booking_base_id(booking: Mapping[str, Any]) -> str | None:
    return _get(booking, "id", "booking_id", "bookingId")


def booking_customer_id(booking: Mapping[str, Any]) -> str | None:
    creator = _get(booking, "creator_details", "creatorDetails") or {}
    return _get(booking, "customer_id", "customerId") or _get(creator, "customer_id", "customerId")


def booking_location_id(booking: Mapping[str, Any]) -> str | None:
    location = booking.get("location") if isinstance(booking.get("location"), Mapping) else None
    return _get(booking, "location_id", "locationId") or _get(location, "id")


def booking_segments(booking: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    segments = _get(booking, "appointment_segments", "appointmentSegments") or []
    return [segment for segment in segments if isinstance(segment, Mapping)]


def segment_row_id(base_id: str, segment: Mapping[str, Any] | None) -> str:
    if segment is None:
        return base_id
    variation = _get(segment, "service_variation_id", "serviceVariationId") or "unknown"
    return f"{base_id}-{variation}"


def _segment_fields(segment: Mapping[str, Any] | None) -> dict[str, Any]:
    if segment is None:
        return {}
    version = _get(segment, "service_variation_version", "serviceVariationVersion")
    return {
        "service_variation_id": _get(segment, "service_variation_id", "serviceVariationId"),
        "service_variation_version": str(version) if version is not None else None,
        "technician_id": _get(segment, "team_member_id", "teamMemberId"),
        "duration_minutes": _as_int(_get(segment, "duration_minutes", "durationMinutes")),
    }


class BookingService:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def save_booking(
        self,
        booking: Mapping[str, Any],
        *,
        customer_id: str | None,
        organization_id: str,
        merchant_id: str | None = None,
    ) -> list[Booking]:
        """Upsert one row per segment (or a single row when there are none)."""

        base_id = booking_base_id(booking)
        if not base_id:
            logger.warning("Booking payload without id; nothing saved")
            return []
        segments: list[Mapping[str, Any] | None] = list(booking_segments(booking)) or [None]
        rows = []
        for segment in segments:
            rows.append(
                await self._upsert_row(
                    booking,
                    segment,
                    row_id=segment_row_id(base_id, segment),
                    customer_id=customer_id,
                    organization_id=organization_id,
                    merchant_id=merchant_id or _get(booking, "merchant_id", "merchantId"),
                )
            )
        await self._db.commit()
        logger.info("Saved booking rows", booking_id=base_id, rows=len(rows))
        return rows

    async def find_by_prefix(self, base_id: str) -> list[Booking]:
        result = await self._db.execute(
            select(Booking)
            .where(Booking.booking_id.startswith(base_id, autoescape=True))
            .order_by(Booking.created_at.asc())
        )
        return list(result.scalars().all())

    async def apply_update(self, booking: Mapping[str, Any]) -> list[Booking]:
        """Patch every stored row sharing the booking's base id; returns the rows touched."""

        base_id = booking_base_id(booking)
        if not base_id:
            return []
        rows = await self.find_by_prefix(base_id)
        if not rows:
            return []

        segments = booking_segments(booking)
        status = _get(booking, "status")
        customer_note = _get(booking, "customer_note", "customerNote")
        seller_note = _get(booking, "seller_note", "sellerNote")
        version = _as_int(_get(booking, "version"))
        location_id = booking_location_id(booking)

        for row in rows:
            if status:
                row.status = status
            if customer_note is not None:
                row.customer_note = customer_note
            if seller_note is not None:
                row.seller_note = seller_note
            if version is not None:
                row.version = version
            if location_id:
                row.location_id = location_id
            if segments:
                matching = next(
                    (
                        segment
                        for segment in segments
                        if _get(segment, "service_variation_id", "serviceVariationId") == row.service_variation_id
                    ),
                    segments[0],
                )
                for key, value in _segment_fields(matching).items():
                    if value is not None:
                        setattr(row, key, value)
            row.raw_json = dict(booking)
        await self._db.commit()
        logger.info("Updated booking rows", booking_id=base_id, rows=len(rows))
        return rows

    async def _upsert_row(
        self,
        booking: Mapping[str, Any],
        segment: Mapping[str, Any] | None,
        *,
        row_id: str,
        customer_id: str | None,
        organization_id: str,
        merchant_id: str | None,
    ) -> Booking:
        result = await self._db.execute(
            select(Booking).where(Booking.organization_id == organization_id, Booking.booking_id == row_id)
        )
        row = result.scalar_one_or_none()
        segment_fields = _segment_fields(segment)
        if row is None:
            row = Booking(
                organization_id=organization_id,
                booking_id=row_id,
                customer_id=customer_id,
                location_id=booking_location_id(booking),
                merchant_id=merchant_id,
                status=_get(booking, "status") or "ACCEPTED",
                version=_as_int(_get(booking, "version")) or 0,
                start_at=_parse_timestamp(_get(booking, "start_at", "startAt")),
                customer_note=_get(booking, "customer_note", "customerNote"),
                seller_note=_get(booking, "seller_note", "sellerNote"),
                source=_get(booking, "source"),
                raw_json=dict(booking),
                **segment_fields,
            )
            self._db.add(row)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                logger.info("Booking row created concurrently; updating instead", booking_id=row_id)
                return await self._upsert_row(
                    booking,
                    segment,
                    row_id=row_id,
                    customer_id=customer_id,
                    organization_id=organization_id,
                    merchant_id=merchant_id,
                )
            return row

        row.version = _as_int(_get(booking, "version")) or row.version
        row.status = _get(booking, "status") or row.status
        row.merchant_id = merchant_id or row.merchant_id
        for key, value in segment_fields.items():
            setattr(row, key, value)
        row.customer_note = _get(booking, "customer_note", "customerNote") or row.customer_note
        row.seller_note = _get(booking, "seller_note", "sellerNote") or row.seller_note
        row.raw_json = dict(booking)
        return row


__all__ = [
    "BookingService",
    "booking_base_id",
    "booking_customer_id",
    "booking_location_id",
    "booking_segments",
    "segment_row_id",
]
