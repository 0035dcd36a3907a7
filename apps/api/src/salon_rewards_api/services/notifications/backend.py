"""Delivery backends: SMTP email, Twilio SMS and wallet pass pushes."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Protocol

from twilio.rest import Client as TwilioClient

SMTP_SSL_PORT = 465


class EmailBackend(Protocol):
    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        ...


class SMSBackend(Protocol):
    """Returns the provider message id (Twilio SID) when the provider reports one."""

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        ...


class PushBackend(Protocol):
    """Notifies wallet pass holders that the balance behind a GAN changed."""

    async def send_push(self, gift_card_gan: str, reason: str, *, metadata: dict[str, Any] | None = None) -> None:
        ...


def build_email(
    recipient: str,
    subject: str,
    body_text: str,
    *,
    body_html: str | None = None,
    reply_to: str | None = None,
    sender: str | None = None,
) -> EmailMessage:
    message = EmailMessage()
    if sender:
        message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    return message


class SMTPEmailBackend:
    """Sends through an SMTP relay; implicit TLS on port 465, STARTTLS otherwise."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        use_tls: bool,
        sender_email: str,
        sender_name: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._credentials = (username, password) if username and password else None
        self._use_tls = use_tls
        self._sender = formataddr((sender_name, sender_email)) if sender_name else sender_email
        self._timeout = timeout

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        message = build_email(
            recipient, subject, body_text, body_html=body_html, reply_to=reply_to, sender=self._sender
        )
        await asyncio.to_thread(self._deliver, message)

    def _connect(self) -> smtplib.SMTP:
        if self._port == SMTP_SSL_PORT:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        smtp = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        if self._use_tls:
            smtp.starttls()
        return smtp

    def _deliver(self, message: EmailMessage) -> None:
        with self._connect() as smtp:
            if self._credentials:
                smtp.login(*self._credentials)
            smtp.send_message(message)


class TwilioSMSBackend:
    """The Twilio SDK is synchronous, so each send runs in a worker thread."""

    def __init__(self, *, account_sid: str, auth_token: str, from_number: str) -> None:
        self._client = TwilioClient(account_sid, auth_token)
        self._from_number = from_number

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        message = await asyncio.to_thread(
            self._client.messages.create,
            to=recipient,
            from_=self._from_number,
            body=body_text,
        )
        return getattr(message, "sid", None)


@dataclass
class InMemoryEmailBackend:
    sent_messages: list[EmailMessage] = field(default_factory=list)

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        self.sent_messages.append(build_email(recipient, subject, body_text, body_html=body_html, reply_to=reply_to))


@dataclass
class InMemorySMSBackend:
    """Records (phone number, body) pairs and hands out fake Twilio SIDs."""

    sent_messages: list[tuple[str, str]] = field(default_factory=list)

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        self.sent_messages.append((recipient, body_text))
        return f"SM{len(self.sent_messages):032d}"


@dataclass
class InMemoryPushBackend:
    sent_messages: list[dict[str, Any]] = field(default_factory=list)

    async def send_push(self, gift_card_gan: str, reason: str, *, metadata: dict[str, Any] | None = None) -> None:
        self.sent_messages.append({"gift_card_gan": gift_card_gan, "reason": reason, "metadata": dict(metadata or {})})


__all__ = [
    "EmailBackend",
    "InMemoryEmailBackend",
    "InMemoryPushBackend",
    "InMemorySMSBackend",
    "PushBackend",
    "SMSBackend",
    "SMTPEmailBackend",
    "TwilioSMSBackend",
    "build_email",
]
