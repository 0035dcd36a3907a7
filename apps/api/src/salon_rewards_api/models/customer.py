"""Square customer mirror with referral program state."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, false, func
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class SquareCustomer(Base):
    """A salon client known to Square, enriched with referral and reward projections."""

    __tablename__ = "square_existing_clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    square_customer_id = Column(String(64), nullable=False, unique=True, index=True)
    organization_id = Column(String(64), nullable=True, index=True)
    given_name = Column(String(128), nullable=True)
    family_name = Column(String(128), nullable=True)
    email_address = Column(String(255), nullable=True)
    phone_number = Column(String(32), nullable=True)

    personal_code = Column(String(32), nullable=True, unique=True)
    referral_url = Column(Text, nullable=True)
    activated_as_referrer = Column(Boolean, nullable=False, default=False, server_default=false())
    got_signup_bonus = Column(Boolean, nullable=False, default=False, server_default=false())
    used_referral_code = Column(String(32), nullable=True)
    referral_email_sent = Column(Boolean, nullable=False, default=False, server_default=false())
    referral_sms_sent = Column(Boolean, nullable=False, default=False, server_default=false())
    referral_sms_sid = Column(String(64), nullable=True)
    first_payment_completed = Column(Boolean, nullable=False, default=False, server_default=false())
    total_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    total_rewards_cents = Column(Integer, nullable=False, default=0, server_default="0")

    gift_card_id = Column(String(64), nullable=True)
    gift_card_gan = Column(String(32), nullable=True)
    gift_card_order_id = Column(String(64), nullable=True)
    gift_card_line_item_uid = Column(String(64), nullable=True)
    gift_card_delivery_channel = Column(String(32), nullable=True)
    gift_card_activation_url = Column(Text, nullable=True)
    gift_card_pass_kit_url = Column(Text, nullable=True)
    gift_card_digital_email = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def display_name(self) -> str:
        return f"{self.given_name or ''} {self.family_name or ''}".strip()


__all__ = ["SquareCustomer"]
