"""Referral profile and payout records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class ReferralRewardStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class ReferralRewardType(str, Enum):
    REFERRER_REWARD = "referrer_reward"
    FRIEND_SIGNUP_BONUS = "friend_signup_bonus"


class ReferralProfile(Base):
    """Normalized referral identity for a customer."""

    __tablename__ = "referral_profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    square_customer_id = Column(String(64), nullable=False, unique=True, index=True)
    personal_code = Column(String(32), nullable=True, unique=True)
    referral_url = Column(Text, nullable=True)
    used_referral_code = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ReferralReward(Base):
    """A reward paid out to a referrer or a referred friend."""

    __tablename__ = "referral_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_customer_id = Column(String(64), nullable=False, index=True)
    referred_customer_id = Column(String(64), nullable=False, index=True)
    reward_amount_cents = Column(Integer, nullable=False)
    status = Column(SqlEnum(ReferralRewardStatus, name="referral_reward_status"), nullable=False)
    reward_type = Column(SqlEnum(ReferralRewardType, name="referral_reward_type"), nullable=False)
    gift_card_id = Column(UUID(as_uuid=True), ForeignKey("gift_cards.id", ondelete="SET NULL"), nullable=True)
    payment_id = Column(String(64), nullable=True)
    booking_id = Column(String(128), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "ReferralProfile",
    "ReferralReward",
    "ReferralRewardStatus",
    "ReferralRewardType",
]
