"""Gift card reward issuance."""

from .engine import RewardEngine
from .types import (
    CHANNEL_EGIFT_ORDER,
    CHANNEL_OWNER_ACTIVATE,
    CHANNEL_OWNER_ADJUST,
    GiftCardIssueResult,
    GiftCardLoadResult,
    PromotionOrder,
    RewardIntent,
)

__all__ = [
    "CHANNEL_EGIFT_ORDER",
    "CHANNEL_OWNER_ACTIVATE",
    "CHANNEL_OWNER_ADJUST",
    "GiftCardIssueResult",
    "GiftCardLoadResult",
    "PromotionOrder",
    "RewardEngine",
    "RewardIntent",
]
