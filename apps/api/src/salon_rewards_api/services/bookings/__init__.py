"""Booking persistence services."""

from .service import (
    BookingService,
    booking_base_id,
    booking_customer_id,
    booking_location_id,
    booking_segments,
    segment_row_id,
)

__all__ = [
    "BookingService",
    "booking_base_id",
    "booking_customer_id",
    "booking_location_id",
    "booking_segments",
    "segment_row_id",
]
