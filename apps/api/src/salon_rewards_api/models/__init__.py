"""SQLAlchemy models for the referral and gift card service."""

from .application_log import ApplicationLog  # noqa: F401
from .booking import Booking  # noqa: F401
from .customer import SquareCustomer  # noqa: F401
from .gift_card import (  # noqa: F401
    GiftCard,
    GiftCardRewardType,
    GiftCardTransaction,
    GiftCardTransactionType,
)
from .location import Location  # noqa: F401
from .payment import SquarePayment  # noqa: F401
from .referral import (  # noqa: F401
    ReferralProfile,
    ReferralReward,
    ReferralRewardStatus,
    ReferralRewardType,
)
from .webhook_job import WebhookJob, WebhookJobStatus  # noqa: F401
from .workflow_run import WorkflowRun, WorkflowRunStatus  # noqa: F401

__all__ = [
    "ApplicationLog",
    "Booking",
    "GiftCard",
    "GiftCardRewardType",
    "GiftCardTransaction",
    "GiftCardTransactionType",
    "Location",
    "ReferralProfile",
    "ReferralReward",
    "ReferralRewardStatus",
    "ReferralRewardType",
    "SquareCustomer",
    "SquarePayment",
    "WebhookJob",
    "WebhookJobStatus",
    "WorkflowRun",
    "WorkflowRunStatus",
]
