"""Record Square payments and the gift card redemptions they contain."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_rewards_api.models.gift_card import GiftCard, GiftCardTransaction, GiftCardTransactionType
from salon_rewards_api.models.payment import SquarePayment
from salon_rewards_api.services.square.client import SquareAPIError, SquareClient

REDEMPTION_MATCH_WINDOW = timedelta(minutes=5)


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def extract_payment_amount_cents(payment: Mapping[str, Any] | None) -> int | None:
    if not payment:
        return None
    for key in ("amount_money", "amountMoney", "total_money", "totalMoney", "approved_money", "approvedMoney"):
        money = payment.get(key)
        if not isinstance(money, Mapping):
            continue
        amount = money.get("amount")
        try:
            return int(amount)
        except (TypeError, ValueError):
            continue
    return None


def payment_customer_id(payment: Mapping[str, Any]) -> str | None:
    return payment.get("customer_id") or payment.get("customerId")


def payment_order_id(payment: Mapping[str, Any]) -> str | None:
    return payment.get("order_id") or payment.get("orderId")


def _tenders(payment: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    tenders = payment.get("tenders") or payment.get("tender") or []
    if isinstance(tenders, Mapping):
        tenders = [tenders]
    return [tender for tender in tenders if isinstance(tender, Mapping)]


class PaymentRecorder:
    """Upserts ``square_payments`` rows and mirrors REDEEM activities into the gift card ledger."""

    def __init__(self, session: AsyncSession, square: SquareClient) -> None:
        self._db = session
        self._square = square

    async def save_payment(
        self,
        payment: Mapping[str, Any],
        *,
        event_type: str | None = None,
        organization_id: str | None = None,
    ) -> SquarePayment | None:
        payment_id = payment.get("id")
        if not payment_id:
            logger.warning("Payment payload without id; not recorded")
            return None
        money = payment.get("amount_money") or payment.get("amountMoney") or {}
        values = {
            "organization_id": organization_id,
            "customer_id": payment_customer_id(payment),
            "order_id": payment_order_id(payment),
            "location_id": payment.get("location_id") or payment.get("locationId"),
            "status": payment.get("status"),
            "source_type": payment.get("source_type") or payment.get("sourceType"),
            "amount_cents": extract_payment_amount_cents(payment),
            "currency": money.get("currency") if isinstance(money, Mapping) else None,
            "event_type": event_type,
            "raw_json": dict(payment),
        }
        result = await self._db.execute(select(SquarePayment).where(SquarePayment.square_payment_id == payment_id))
        record = result.scalar_one_or_none()
        if record is None:
            record = SquarePayment(square_payment_id=payment_id, **values)
            self._db.add(record)
        else:
            for key, value in values.items():
                if value is not None:
                    setattr(record, key, value)
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            logger.info("Payment recorded concurrently; retrying as update", payment_id=payment_id)
            return await self.save_payment(payment, event_type=event_type, organization_id=organization_id)
        return record

    async def extract_gift_card_gans(self, payment: Mapping[str, Any]) -> list[str]:
        gans: list[str] = []
        for tender in _tenders(payment):
            details = tender.get("gift_card_details") or tender.get("giftCardDetails")
            if not details and tender.get("type") != "SQUARE_GIFT_CARD":
                continue
            details = details or {}
            gan = details.get("gan")
            gift_card_id = details.get("gift_card_id") or details.get("giftCardId")
            if not gan and gift_card_id:
                try:
                    card = await self._square.retrieve_gift_card(gift_card_id)
                except SquareAPIError as exc:
                    logger.warning("Unable to resolve tender gift card number", gift_card_id=gift_card_id, error=str(exc))
                else:
                    gan = card.get("gan")
            if gan and gan.strip() not in gans:
                gans.append(gan.strip())
        return gans

    async def record_redemptions(self, payment: Mapping[str, Any]) -> int:
        """Store REDEEM ledger rows for gift cards tendered in ``payment``; returns rows added."""

        payment_id = payment.get("id")
        if not payment_id:
            return 0
        gans = await self.extract_gift_card_gans(payment)
        if not gans:
            return 0

        recorded = 0
        for gan in gans:
            result = await self._db.execute(select(GiftCard).where(GiftCard.gift_card_gan == gan))
            card = result.scalar_one_or_none()
            if card is None:
                logger.info("Tendered gift card is not a referral card; skipping")
                continue
            existing = await self._db.execute(
                select(GiftCardTransaction.id).where(
                    GiftCardTransaction.gift_card_id == card.id,
                    GiftCardTransaction.transaction_type == GiftCardTransactionType.REDEEM,
                    GiftCardTransaction.square_payment_id == payment_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                continue
            try:
                activities = await self._square.list_gift_card_activities(
                    gift_card_id=card.square_gift_card_id, activity_type="REDEEM"
                )
            except SquareAPIError as exc:
                logger.warning(
                    "Unable to list gift card activities",
                    gift_card_id=card.square_gift_card_id,
                    error=str(exc),
                )
                continue
            for activity in activities:
                if not self._matches_payment(activity, payment):
                    continue
                if await self._activity_recorded(activity.get("id")):
                    continue
                self._add_redemption(card, activity, payment_id)
                recorded += 1
        if recorded:
            await self._db.commit()
            logger.info("Recorded gift card redemptions", payment_id=payment_id, count=recorded)
        return recorded

    @staticmethod
    def _matches_payment(activity: Mapping[str, Any], payment: Mapping[str, Any]) -> bool:
        if activity.get("type") != "REDEEM":
            return False
        details = activity.get("redeem_activity_details") or {}
        if details.get("payment_id") == payment.get("id"):
            return True
        order_id = payment_order_id(payment)
        if order_id and details.get("order_id") == order_id:
            return True
        activity_at = _parse_timestamp(activity.get("created_at"))
        payment_at = _parse_timestamp(payment.get("created_at") or payment.get("createdAt")) or datetime.now(timezone.utc)
        return activity_at is not None and abs(payment_at - activity_at) < REDEMPTION_MATCH_WINDOW

    async def _activity_recorded(self, activity_id: str | None) -> bool:
        if not activity_id:
            return False
        result = await self._db.execute(
            select(GiftCardTransaction.id).where(GiftCardTransaction.square_activity_id == activity_id)
        )
        return result.scalar_one_or_none() is not None

    def _add_redemption(self, card: GiftCard, activity: Mapping[str, Any], payment_id: str) -> None:
        details = activity.get("redeem_activity_details") or {}
        amount = int((details.get("amount_money") or {}).get("amount") or 0)
        balance_after = int((activity.get("gift_card_balance_money") or {}).get("amount") or 0)
        self._db.add(
            GiftCardTransaction(
                gift_card_id=card.id,
                transaction_type=GiftCardTransactionType.REDEEM,
                amount_cents=-abs(amount),
                balance_before_cents=balance_after + amount,
                balance_after_cents=balance_after,
                square_activity_id=activity.get("id"),
                square_order_id=details.get("order_id"),
                square_payment_id=details.get("payment_id") or payment_id,
                context_label="Gift card used for payment",
                metadata_json={"square_activity": dict(activity), "payment_id": payment_id},
            )
        )
        card.current_balance_cents = balance_after
        card.last_balance_check_at = datetime.now(timezone.utc)


__all__ = [
    "PaymentRecorder",
    "REDEMPTION_MATCH_WINDOW",
    "extract_payment_amount_cents",
    "payment_customer_id",
    "payment_order_id",
]
