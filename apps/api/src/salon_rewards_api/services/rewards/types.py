"""Value objects exchanged with the reward engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

RewardKind = Literal["referrer", "friend"]

CHANNEL_EGIFT_ORDER = "square_egift_order"
CHANNEL_OWNER_ACTIVATE = "owner_funded_activate"
CHANNEL_OWNER_ADJUST = "owner_funded_adjust"


@dataclass(slots=True)
class RewardIntent:
    """One gift card issuance for a beneficiary customer."""

    customer_id: str
    amount_cents: int
    kind: RewardKind = "friend"
    customer_name: str | None = None
    order_id: str | None = None
    line_item_uid: str | None = None
    idempotency_seed: str | None = None
    context_label: str | None = None

    @property
    def note_label(self) -> str:
        if self.context_label:
            return self.context_label
        return "Referrer reward gift card" if self.kind == "referrer" else "Signup bonus gift card"

    @property
    def adjustment_reason(self) -> str:
        return "COMPLIMENTARY" if self.kind == "referrer" else "FRIEND_BONUS"


@dataclass(slots=True)
class PromotionOrder:
    order_id: str
    line_item_uid: str | None
    amount_cents: int


@dataclass(slots=True)
class GiftCardIssueResult:
    gift_card_id: str
    gift_card_gan: str | None
    delivery_channel: str | None
    amount_cents: int
    balance_cents: int
    state: str | None = None
    order_id: str | None = None
    line_item_uid: str | None = None
    activation_url: str | None = None
    pass_kit_url: str | None = None
    digital_email: str | None = None
    activity_id: str | None = None

    def customer_fields(self) -> dict[str, Any]:
        """Projection written onto the customer row."""

        return {
            "gift_card_id": self.gift_card_id,
            "gift_card_gan": self.gift_card_gan,
            "gift_card_order_id": self.order_id,
            "gift_card_line_item_uid": self.line_item_uid,
            "gift_card_delivery_channel": self.delivery_channel,
            "gift_card_activation_url": self.activation_url,
            "gift_card_pass_kit_url": self.pass_kit_url,
            "gift_card_digital_email": self.digital_email,
        }


@dataclass(slots=True)
class GiftCardLoadResult:
    success: bool
    gift_card_id: str
    error: str | None = None
    gift_card_gan: str | None = None
    delivery_channel: str | None = None
    balance_cents: int | None = None
    activation_url: str | None = None
    pass_kit_url: str | None = None
    digital_email: str | None = None
    activity_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    def customer_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "gift_card_delivery_channel": self.delivery_channel,
            "gift_card_activation_url": self.activation_url,
            "gift_card_pass_kit_url": self.pass_kit_url,
            "gift_card_digital_email": self.digital_email,
        }
        if self.gift_card_gan:
            fields["gift_card_gan"] = self.gift_card_gan
        return {key: value for key, value in fields.items() if value is not None}


__all__ = [
    "CHANNEL_EGIFT_ORDER",
    "CHANNEL_OWNER_ACTIVATE",
    "CHANNEL_OWNER_ADJUST",
    "GiftCardIssueResult",
    "GiftCardLoadResult",
    "PromotionOrder",
    "RewardIntent",
    "RewardKind",
]
