"""Payment recording services."""

from .recorder import (
    PaymentRecorder,
    REDEMPTION_MATCH_WINDOW,
    extract_payment_amount_cents,
    payment_customer_id,
    payment_order_id,
)

__all__ = [
    "PaymentRecorder",
    "REDEMPTION_MATCH_WINDOW",
    "extract_payment_amount_cents",
    "payment_customer_id",
    "payment_order_id",
]
