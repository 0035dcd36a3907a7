"""Referral and gift card notifications over email, SMS and wallet pushes."""

from .backend import (
    EmailBackend,
    InMemoryEmailBackend,
    InMemoryPushBackend,
    InMemorySMSBackend,
    PushBackend,
    SMSBackend,
    SMTPEmailBackend,
    TwilioSMSBackend,
)
from .service import NotificationEvent, NotificationOutcome, NotificationService

__all__ = [
    "EmailBackend",
    "InMemoryEmailBackend",
    "InMemoryPushBackend",
    "InMemorySMSBackend",
    "NotificationEvent",
    "NotificationOutcome",
    "NotificationService",
    "PushBackend",
    "SMSBackend",
    "SMTPEmailBackend",
    "TwilioSMSBackend",
]
