"""Customer-facing notifications for referral codes and gift cards."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from salon_rewards_api.core.settings import Settings, get_settings
from salon_rewards_api.services.square.client import SquareAPIError, SquareClient

from .backend import EmailBackend, PushBackend, SMSBackend, SMTPEmailBackend, TwilioSMSBackend
from .qr import clean_gan, generate_gift_card_qr_data_uri, normalize_gan
from .templates import (
    RenderedTemplate,
    render_admin_referral_used,
    render_gift_card_issued,
    render_referral_code,
    render_referral_sms,
)


# Only the most recent sent events stay in memory.
RECENT_EVENT_LIMIT = 100


@dataclass
class NotificationEvent:
    """Summary of a delivered notification; bodies are left to the backend."""

    recipient: str
    subject: str
    event_type: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NotificationOutcome:
    sent: bool
    skipped_reason: str | None = None
    error: str | None = None
    provider_id: str | None = None
    qr_data_uri: str | None = None
    gift_card_gan: str | None = None
    pass_kit_url: str | None = None


class NotificationService:
    """Coordinates email, SMS and wallet push delivery via pluggable backends."""

    def __init__(
        self,
        *,
        email_backend: Optional[EmailBackend] = None,
        sms_backend: Optional[SMSBackend] = None,
        push_backend: Optional[PushBackend] = None,
        square: SquareClient | None = None,
        settings: Settings | None = None,
        pass_kit_poll_interval_seconds: float | None = None,
        pass_kit_poll_attempts: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._email = email_backend if email_backend is not None else self._build_default_email_backend()
        self._sms = sms_backend if sms_backend is not None else self._build_default_sms_backend()
        self._push = push_backend
        self._square = square
        self._poll_interval = (
            self._settings.pass_kit_poll_interval_seconds
            if pass_kit_poll_interval_seconds is None
            else pass_kit_poll_interval_seconds
        )
        self._poll_attempts = (
            self._settings.pass_kit_poll_attempts if pass_kit_poll_attempts is None else pass_kit_poll_attempts
        )
        self._events: deque[NotificationEvent] = deque(maxlen=RECENT_EVENT_LIMIT)
        self._pending_pushes: set[asyncio.Task] = set()

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return list(self._events)

    async def send_referral_code_email(
        self,
        *,
        customer_name: str | None,
        email: str | None,
        referral_code: str,
        referral_url: str,
    ) -> NotificationOutcome:
        if not email:
            return NotificationOutcome(sent=False, skipped_reason="missing-email")
        template = render_referral_code(
            customer_name=customer_name,
            referral_code=referral_code,
            referral_url=referral_url,
            business_name=self._settings.business_name,
            reward_amount_cents=self._settings.referral_reward_amount_cents,
        )
        return await self._deliver_email(
            email,
            template,
            event_type="referral_code",
            metadata={"referral_code": referral_code, "referral_url": referral_url},
        )

    async def send_referral_code_sms(
        self,
        *,
        phone_number: str | None,
        customer_name: str | None,
        referral_url: str,
    ) -> NotificationOutcome:
        if not self._settings.referral_sms_enabled:
            return NotificationOutcome(sent=False, skipped_reason="sms-disabled")
        destination = (phone_number or "").strip()
        if not destination:
            return NotificationOutcome(sent=False, skipped_reason="missing-phone")
        if self._sms is None:
            return NotificationOutcome(sent=False, skipped_reason="sms-not-configured")
        if not destination.startswith("+"):
            logger.warning("Phone number is not in E.164 format", phone_suffix=destination[-4:])
        body = render_referral_sms(
            customer_name=customer_name,
            referral_url=referral_url,
            business_name=self._settings.business_name,
            reward_amount_cents=self._settings.referral_reward_amount_cents,
        )
        try:
            sid = await self._sms.send_sms(destination, body)
        except Exception as exc:
            logger.exception("Referral SMS failed", phone_suffix=destination[-4:])
            return NotificationOutcome(sent=False, error=str(exc))
        self._events.append(
            NotificationEvent(
                recipient=destination,
                subject="referral_sms",
                event_type="referral_sms",
                metadata={"sid": sid},
            )
        )
        return NotificationOutcome(sent=True, provider_id=sid)

    async def send_gift_card_email(
        self,
        *,
        customer_name: str | None,
        email: str | None,
        gift_card_gan: str | None,
        amount_cents: int,
        balance_cents: int | None = None,
        activation_url: str | None = None,
        pass_kit_url: str | None = None,
        gift_card_id: str | None = None,
        wait_for_pass_kit: bool = False,
    ) -> NotificationOutcome:
        if not email:
            logger.info("Skipping gift card email: email address missing")
            return NotificationOutcome(sent=False, skipped_reason="missing-email")
        if not gift_card_gan:
            logger.info("Skipping gift card email: card number missing")
            return NotificationOutcome(sent=False, skipped_reason="missing-gan")
        if amount_cents <= 0:
            logger.info("Gift card amount is zero, skipping issuance email")
            return NotificationOutcome(sent=False, skipped_reason="zero-amount")

        gan = await self.resolve_gan(gift_card_gan, gift_card_id=gift_card_id)
        qr_data_uri = generate_gift_card_qr_data_uri(gan)

        if wait_for_pass_kit and not pass_kit_url and gift_card_id:
            pass_kit_url = await self.wait_for_pass_kit_url(gift_card_id)

        template = render_gift_card_issued(
            customer_name=customer_name,
            business_name=self._settings.business_name,
            gift_card_gan=gan,
            amount_cents=amount_cents,
            balance_cents=balance_cents,
            activation_url=activation_url,
            pass_kit_url=pass_kit_url,
            qr_data_uri=qr_data_uri,
        )
        outcome = await self._deliver_email(
            email,
            template,
            event_type="gift_card_issued",
            metadata={
                "gift_card_gan": gan,
                "amount_cents": amount_cents,
                "has_qr_code": qr_data_uri is not None,
                "pass_kit_url": pass_kit_url,
            },
        )
        outcome.qr_data_uri = qr_data_uri
        outcome.gift_card_gan = gan
        outcome.pass_kit_url = pass_kit_url
        if outcome.sent:
            self.queue_wallet_pass_update(gan, reason="gift-card-email", metadata={"amountCents": amount_cents})
        return outcome

    async def send_admin_referral_notification(
        self,
        *,
        friend_name: str,
        friend_customer_id: str,
        referrer_name: str,
        referrer_customer_id: str,
        referral_code: str,
        booking_id: str | None,
        gift_card_gan: str | None,
        amount_cents: int,
    ) -> None:
        """Tell operators a referral code was redeemed; failures are logged only."""

        recipients = self._settings.admin_notification_emails
        if not recipients:
            return
        template = render_admin_referral_used(
            friend_name=friend_name,
            friend_customer_id=friend_customer_id,
            referrer_name=referrer_name,
            referrer_customer_id=referrer_customer_id,
            referral_code=referral_code,
            booking_id=booking_id,
            gift_card_gan=gift_card_gan,
            amount_cents=amount_cents,
        )
        for recipient in recipients:
            await self._deliver_email(
                recipient,
                template,
                event_type="admin_referral_used",
                metadata={"referral_code": referral_code, "friend_customer_id": friend_customer_id},
            )

    async def resolve_gan(self, raw_gan: str, *, gift_card_id: str | None = None) -> str:
        """Prefer the authoritative Square GAN when the local value is malformed."""

        normalized = normalize_gan(raw_gan)
        if normalized is not None or not gift_card_id or self._square is None:
            return normalized or clean_gan(raw_gan) or raw_gan
        try:
            card = await self._square.retrieve_gift_card(gift_card_id)
        except SquareAPIError as exc:
            logger.warning("Unable to re-verify gift card number", gift_card_id=gift_card_id, errors=exc.errors)
            return clean_gan(raw_gan) or raw_gan
        authoritative = normalize_gan(card.get("gan"))
        if authoritative and authoritative != clean_gan(raw_gan):
            logger.info("Replaced malformed gift card number with Square value", gift_card_id=gift_card_id)
        return authoritative or clean_gan(raw_gan) or raw_gan

    async def wait_for_pass_kit_url(self, gift_card_id: str) -> str | None:
        """Poll Square until the wallet pass URL appears, giving up after the configured attempts."""

        if self._square is None:
            return None
        for attempt in range(self._poll_attempts):
            try:
                card = await self._square.retrieve_gift_card(gift_card_id)
            except SquareAPIError as exc:
                logger.warning("Pass kit poll failed", gift_card_id=gift_card_id, attempt=attempt + 1, errors=exc.errors)
            else:
                url = (card.get("digital_details") or {}).get("pass_kit_url")
                if url:
                    return url
            if attempt + 1 < self._poll_attempts:
                await asyncio.sleep(self._poll_interval)
        logger.info("Pass kit URL not available; sending without it", gift_card_id=gift_card_id)
        return None

    def queue_wallet_pass_update(
        self,
        gift_card_gan: str | None,
        *,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Fire-and-forget wallet pass refresh."""

        if not gift_card_gan or self._push is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._send_push(gift_card_gan, reason, metadata or {}))
        self._pending_pushes.add(task)
        task.add_done_callback(self._pending_pushes.discard)

    async def flush(self) -> None:
        """Wait for queued wallet pushes."""

        if self._pending_pushes:
            await asyncio.gather(*list(self._pending_pushes), return_exceptions=True)

    async def _send_push(self, gift_card_gan: str, reason: str, metadata: dict[str, Any]) -> None:
        assert self._push is not None
        try:
            await self._push.send_push(gift_card_gan, reason, metadata=metadata)
        except Exception:
            logger.exception("Wallet pass push failed", reason=reason)

    async def _deliver_email(
        self,
        recipient: str,
        template: RenderedTemplate,
        *,
        event_type: str,
        metadata: dict[str, Any],
    ) -> NotificationOutcome:
        if self._email is None:
            logger.info("Email backend not configured; skipping", event_type=event_type)
            return NotificationOutcome(sent=False, skipped_reason="email-not-configured")
        try:
            await self._email.send_email(
                recipient,
                template.subject,
                template.text_body,
                body_html=template.html_body,
            )
        except Exception as exc:
            logger.exception("Email delivery failed", event_type=event_type)
            return NotificationOutcome(sent=False, error=str(exc))
        self._events.append(
            NotificationEvent(
                recipient=recipient,
                subject=template.subject,
                event_type=event_type,
                metadata=metadata,
            )
        )
        return NotificationOutcome(sent=True)

    def _build_default_email_backend(self) -> Optional[EmailBackend]:
        if not self._settings.smtp_host or not self._settings.smtp_sender_email:
            return None
        return SMTPEmailBackend(
            host=self._settings.smtp_host,
            port=self._settings.smtp_port,
            username=self._settings.smtp_username,
            password=self._settings.smtp_password,
            use_tls=self._settings.smtp_use_tls,
            sender_email=self._settings.smtp_sender_email,
            sender_name=self._settings.business_name,
        )

    def _build_default_sms_backend(self) -> Optional[SMSBackend]:
        if not (
            self._settings.twilio_account_sid
            and self._settings.twilio_auth_token
            and self._settings.twilio_from_number
        ):
            return None
        return TwilioSMSBackend(
            account_sid=self._settings.twilio_account_sid,
            auth_token=self._settings.twilio_auth_token,
            from_number=self._settings.twilio_from_number,
        )


__all__ = ["NotificationEvent", "NotificationOutcome", "NotificationService"]
