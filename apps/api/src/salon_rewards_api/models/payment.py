"""Mirror of Square payments received via webhooks."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class SquarePayment(Base):
    __tablename__ = "square_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    square_payment_id = Column(String(64), nullable=False, unique=True, index=True)
    organization_id = Column(String(64), nullable=True, index=True)
    customer_id = Column(String(64), nullable=True, index=True)
    order_id = Column(String(64), nullable=True)
    location_id = Column(String(64), nullable=True)
    status = Column(String(32), nullable=True)
    source_type = Column(String(32), nullable=True)
    amount_cents = Column(Integer, nullable=True)
    currency = Column(String(8), nullable=True)
    event_type = Column(String(64), nullable=True)
    raw_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["SquarePayment"]
