"""Square booking mirror; one row per service segment."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class Booking(Base):
    """Segment-level booking row keyed by ``{base_id}`` or ``{base_id}-{service_variation_id}``."""

    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("organization_id", "booking_id", name="uq_bookings_organization_booking"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    booking_id = Column(String(255), nullable=False, index=True)
    customer_id = Column(String(64), nullable=True, index=True)
    location_id = Column(String(64), nullable=True)
    merchant_id = Column(String(64), nullable=True)
    status = Column(String(32), nullable=True)
    version = Column(Integer, nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=True)
    service_variation_id = Column(String(64), nullable=True)
    service_variation_version = Column(String(64), nullable=True)
    technician_id = Column(String(64), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    customer_note = Column(Text, nullable=True)
    seller_note = Column(Text, nullable=True)
    source = Column(String(64), nullable=True)
    raw_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["Booking"]
