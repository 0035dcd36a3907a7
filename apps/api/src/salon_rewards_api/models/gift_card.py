"""Gift card mirror and ledger models."""

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
from sqlalchemy.orm import relationship

from salon_rewards_api.db.base import Base


class GiftCardRewardType(str, Enum):
    REFERRER_REWARD = "referrer_reward"
    FRIEND_SIGNUP_BONUS = "friend_signup_bonus"


class GiftCardTransactionType(str, Enum):
    CREATE = "create"
    ACTIVATE = "activate"
    ADJUST_INCREMENT = "adjust_increment"
    REDEEM = "redeem"


class GiftCard(Base):
    """Local projection of a Square gift card issued by the referral program."""

    __tablename__ = "gift_cards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    square_gift_card_id = Column(String(64), nullable=False, unique=True, index=True)
    square_customer_id = Column(String(64), nullable=True, index=True)
    gift_card_gan = Column(String(32), nullable=True, index=True)
    reward_type = Column(SqlEnum(GiftCardRewardType, name="gift_card_reward_type"), nullable=False)
    state = Column(String(32), nullable=False, default="PENDING")
    initial_amount_cents = Column(Integer, nullable=False, default=0, server_default="0")
    current_balance_cents = Column(Integer, nullable=False, default=0, server_default="0")
    delivery_channel = Column(String(32), nullable=True)
    activation_url = Column(Text, nullable=True)
    pass_kit_url = Column(Text, nullable=True)
    digital_email = Column(String(255), nullable=True)
    square_order_id = Column(String(64), nullable=True)
    line_item_uid = Column(String(64), nullable=True)
    last_balance_check_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship(
        "GiftCardTransaction", back_populates="gift_card", cascade="all, delete-orphan"
    )


class GiftCardTransaction(Base):
    """Audit ledger of gift card activities."""

    __tablename__ = "gift_card_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    gift_card_id = Column(UUID(as_uuid=True), ForeignKey("gift_cards.id", ondelete="CASCADE"), nullable=False)
    transaction_type = Column(
        SqlEnum(GiftCardTransactionType, name="gift_card_transaction_type"), nullable=False
    )
    amount_cents = Column(Integer, nullable=False, default=0)
    balance_before_cents = Column(Integer, nullable=True)
    balance_after_cents = Column(Integer, nullable=True)
    square_activity_id = Column(String(64), nullable=True, unique=True)
    square_order_id = Column(String(64), nullable=True)
    square_payment_id = Column(String(64), nullable=True, index=True)
    reason = Column(String(32), nullable=True)
    context_label = Column(String(255), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    gift_card = relationship("GiftCard", back_populates="transactions")


__all__ = [
    "GiftCard",
    "GiftCardRewardType",
    "GiftCardTransaction",
    "GiftCardTransactionType",
]
