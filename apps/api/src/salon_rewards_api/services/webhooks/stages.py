"""Pipeline names and stage tokens recorded on runs and jobs."""

from __future__ import annotations

CUSTOMER_INGEST = "customer_ingest"
BOOKING = "booking"
BOOKING_UPDATE = "booking_update"
PAYMENT = "payment"
PAYMENT_SAVE = "payment_save"
FRIEND_REWARD = "friend_reward"
REFERRER_REWARD = "referrer_reward"
REFERRER_PROMOTION = "referrer_promotion"

STAGE_BY_EVENT: dict[str, str] = {
    "customer.created": CUSTOMER_INGEST,
    "booking.created": BOOKING,
    "booking.updated": BOOKING_UPDATE,
    "payment.created": PAYMENT,
    "payment.updated": PAYMENT,
}


def token(pipeline: str, step: str) -> str:
    return f"{pipeline}:{step}"


__all__ = [
    "BOOKING",
    "BOOKING_UPDATE",
    "CUSTOMER_INGEST",
    "FRIEND_REWARD",
    "PAYMENT",
    "PAYMENT_SAVE",
    "REFERRER_PROMOTION",
    "REFERRER_REWARD",
    "STAGE_BY_EVENT",
    "token",
]
