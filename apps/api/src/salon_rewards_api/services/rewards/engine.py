"""Gift card issuance and load state machine backed by the Square Gift Cards API."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.gift_card import (
    GiftCard,
    GiftCardRewardType,
    GiftCardTransaction,
    GiftCardTransactionType,
)
from salon_rewards_api.services.notifications import NotificationService
from salon_rewards_api.services.runs.availability import SessionFactory, open_session
from salon_rewards_api.services.runs.idempotency import build_idempotency_key
from salon_rewards_api.services.square.client import SquareAPIError, SquareClient

from .types import (
    CHANNEL_EGIFT_ORDER,
    CHANNEL_OWNER_ACTIVATE,
    CHANNEL_OWNER_ADJUST,
    GiftCardIssueResult,
    GiftCardLoadResult,
    PromotionOrder,
    RewardIntent,
)

OWNER_FUNDED_INSTRUMENT = "OWNER_FUNDED"
DEFAULT_LOAD_LABEL = "Referrer reward gift card load"


def _amount(money: dict[str, Any] | None) -> int:
    if not money:
        return 0
    try:
        return int(money.get("amount") or 0)
    except (TypeError, ValueError):
        return 0


def _log_square_failure(message: str, exc: SquareAPIError, **context: Any) -> None:
    logger.warning(
        message,
        operation=exc.operation,
        status=exc.status_code,
        square_errors=exc.errors,
        error=str(exc),
        **context,
    )


class RewardEngine:
    """Drives gift card creation, activation and loading with layered fallbacks.

    Every Square mutation is keyed by ``build_idempotency_key([seed, step, gift_card_id])``
    so replaying the same logical reward converges on the same card and activity.
    Ledger rows in ``gift_cards``/``gift_card_transactions`` are written in their own
    sessions and never block the reward outcome.
    """

    def __init__(
        self,
        square: SquareClient,
        session_factory: SessionFactory,
        *,
        notifications: NotificationService | None = None,
        location_id: str | None = None,
        currency: str | None = None,
    ) -> None:
        self._square = square
        self._session_factory = session_factory
        self._notifications = notifications
        self._location_id = location_id if location_id is not None else settings.square_location_id
        self._currency = currency or settings.referral_currency

    @property
    def location_id(self) -> str:
        return self._location_id

    def _money(self, amount_cents: int) -> dict[str, Any]:
        return {"amount": int(amount_cents), "currency": self._currency}

    async def create_gift_card(self, intent: RewardIntent) -> GiftCardIssueResult | None:
        """Create, fund and verify a digital gift card for ``intent``.

        Returns ``None`` when the card shell cannot be created. A positive amount
        that no activation tier managed to fund still returns the (PENDING) card
        with ``delivery_channel=None`` so callers can decide how to proceed.
        """

        if not self._location_id:
            logger.error("Cannot create gift card without a Square location id", customer_id=intent.customer_id)
            return None

        amount_cents = max(int(intent.amount_cents or 0), 0)
        label = intent.note_label
        seed = intent.idempotency_seed or build_idempotency_key(
            ["gift-card", intent.kind, intent.customer_id or intent.customer_name or amount_cents]
        )

        try:
            card = await self._square.create_gift_card(
                idempotency_key=build_idempotency_key([seed, "create"]),
                location_id=self._location_id,
            )
        except SquareAPIError as exc:
            _log_square_failure("Gift card creation failed", exc, customer_id=intent.customer_id)
            return None

        gift_card_id = card.get("id")
        if not gift_card_id:
            logger.error("Square returned no gift card id", customer_id=intent.customer_id)
            return None
        gan: str | None = card.get("gan") or None
        state = card.get("state") or "PENDING"
        logger.info(
            "Created gift card",
            gift_card_id=gift_card_id,
            customer_id=intent.customer_id,
            gan_assigned=bool(gan),
        )

        await self._record_created(intent, gift_card_id, gan, state, amount_cents, card)

        activity: dict[str, Any] | None = None
        channel: str | None = None
        order_id: str | None = None
        line_item_uid: str | None = None
        balance_cents = 0

        if intent.order_id and intent.line_item_uid:
            activity = await self._try_activity(
                build_idempotency_key([seed, "activate-order", gift_card_id]),
                {
                    "gift_card_id": gift_card_id,
                    "type": "ACTIVATE",
                    "location_id": self._location_id,
                    "activate_activity_details": {
                        "order_id": intent.order_id,
                        "line_item_uid": intent.line_item_uid,
                        "reference_id": label,
                    },
                },
                step="activate-order",
            )
            if activity:
                channel = CHANNEL_EGIFT_ORDER
                order_id = intent.order_id
                line_item_uid = intent.line_item_uid

        if activity is None and amount_cents > 0:
            activity = await self._try_activity(
                build_idempotency_key([seed, "activate-owner", gift_card_id]),
                {
                    "gift_card_id": gift_card_id,
                    "type": "ACTIVATE",
                    "location_id": self._location_id,
                    "activate_activity_details": {
                        "amount_money": self._money(amount_cents),
                        "reference_id": label,
                        "buyer_payment_instrument_ids": [OWNER_FUNDED_INSTRUMENT],
                    },
                },
                step="activate-owner",
            )
            if activity:
                channel = CHANNEL_OWNER_ACTIVATE

        if activity is None and amount_cents > 0:
            activity = await self._try_activity(
                build_idempotency_key([seed, "adjust-increment", gift_card_id]),
                {
                    "gift_card_id": gift_card_id,
                    "type": "ADJUST_INCREMENT",
                    "location_id": self._location_id,
                    "adjust_increment_activity_details": {
                        "amount_money": self._money(amount_cents),
                        "reason": label,
                    },
                },
                step="adjust-increment",
            )
            if activity:
                channel = CHANNEL_OWNER_ADJUST

        if activity:
            balance_cents = _amount(activity.get("gift_card_balance_money"))
        elif amount_cents > 0:
            logger.error(
                "Every gift card funding tier failed",
                gift_card_id=gift_card_id,
                customer_id=intent.customer_id,
            )

        if intent.customer_id and gan:
            try:
                await self._square.link_customer_to_gift_card(gift_card_id, intent.customer_id)
            except SquareAPIError as exc:
                _log_square_failure("Linking gift card to customer failed", exc, gift_card_id=gift_card_id)

        activation_url: str | None = None
        pass_kit_url: str | None = None
        digital_email: str | None = None
        try:
            verified = await self._square.retrieve_gift_card(gift_card_id)
        except SquareAPIError as exc:
            _log_square_failure("Unable to verify gift card", exc, gift_card_id=gift_card_id)
        else:
            verified_balance = _amount(verified.get("balance_money"))
            if verified_balance:
                balance_cents = verified_balance
            if verified.get("gan") and verified.get("gan") != gan:
                logger.info("Gift card number assigned after activation", gift_card_id=gift_card_id)
                gan = verified["gan"]
            details = verified.get("digital_details") or {}
            activation_url = details.get("activation_url") or None
            pass_kit_url = details.get("pass_kit_url") or None
            digital_email = details.get("email") or None
            state = verified.get("state") or state

            await self._record_verified(
                gift_card_id,
                gan=gan,
                state=state,
                balance_cents=balance_cents,
                activation_url=activation_url,
                pass_kit_url=pass_kit_url,
                digital_email=digital_email,
                activity=activity,
                amount_cents=amount_cents,
                order_id=order_id,
                reason=intent.adjustment_reason,
                label=label,
                channel=channel,
            )

        if activity and amount_cents > 0 and intent.customer_id and gan:
            await self.append_gift_card_note(intent.customer_id, gan, amount_cents, label)

        if gan and self._notifications is not None:
            self._notifications.queue_wallet_pass_update(
                gan, reason="gift-card-created", metadata={"giftCardId": gift_card_id}
            )

        return GiftCardIssueResult(
            gift_card_id=gift_card_id,
            gift_card_gan=gan,
            delivery_channel=channel,
            amount_cents=amount_cents,
            balance_cents=balance_cents,
            state=state,
            order_id=order_id,
            line_item_uid=line_item_uid,
            activation_url=activation_url,
            pass_kit_url=pass_kit_url,
            digital_email=digital_email,
            activity_id=(activity or {}).get("id"),
        )

    async def load_gift_card(
        self,
        gift_card_id: str,
        amount_cents: int,
        *,
        customer_id: str | None = None,
        context_label: str = DEFAULT_LOAD_LABEL,
        idempotency_seed: str | None = None,
    ) -> GiftCardLoadResult:
        """Add ``amount_cents`` to an existing card, activating it first if still PENDING."""

        if not self._location_id:
            logger.error("Cannot load gift card without a Square location id", gift_card_id=gift_card_id)
            return GiftCardLoadResult(success=False, gift_card_id=gift_card_id, error="Missing location ID")

        seed = idempotency_seed or build_idempotency_key(["load-gift-card", gift_card_id, amount_cents or 0])
        try:
            card = await self._square.retrieve_gift_card(gift_card_id)
        except SquareAPIError as exc:
            _log_square_failure("Unable to retrieve gift card for load", exc, gift_card_id=gift_card_id)
            return GiftCardLoadResult(success=False, gift_card_id=gift_card_id, error=str(exc))
        if not card:
            return GiftCardLoadResult(success=False, gift_card_id=gift_card_id, error="Gift card not found")

        gan = card.get("gan") or None
        card_state = card.get("state")
        balance_before = _amount(card.get("balance_money"))

        if card_state == "PENDING":
            transaction_type = GiftCardTransactionType.ACTIVATE
            channel = CHANNEL_OWNER_ACTIVATE
            key = build_idempotency_key([seed, "activate", gift_card_id])
            activity_body: dict[str, Any] = {
                "gift_card_id": gift_card_id,
                "type": "ACTIVATE",
                "location_id": self._location_id,
                "activate_activity_details": {
                    "amount_money": self._money(amount_cents),
                    "reference_id": context_label,
                    "buyer_payment_instrument_ids": [OWNER_FUNDED_INSTRUMENT],
                },
            }
        else:
            transaction_type = GiftCardTransactionType.ADJUST_INCREMENT
            channel = CHANNEL_OWNER_ADJUST
            key = build_idempotency_key([seed, "adjust", gift_card_id])
            activity_body = {
                "gift_card_id": gift_card_id,
                "type": "ADJUST_INCREMENT",
                "location_id": self._location_id,
                "adjust_increment_activity_details": {
                    "amount_money": self._money(amount_cents),
                    "reason": "COMPLIMENTARY",
                },
            }

        try:
            activity = await self._square.create_gift_card_activity(idempotency_key=key, activity=activity_body)
        except SquareAPIError as exc:
            _log_square_failure("Gift card load failed", exc, gift_card_id=gift_card_id)
            return GiftCardLoadResult(success=False, gift_card_id=gift_card_id, error=str(exc), gift_card_gan=gan)
        if not activity:
            return GiftCardLoadResult(
                success=False,
                gift_card_id=gift_card_id,
                error="Square returned no activity",
                gift_card_gan=gan,
            )

        balance_after = _amount(activity.get("gift_card_balance_money"))
        await self._record_load(
            gift_card_id,
            transaction_type=transaction_type,
            amount_cents=amount_cents,
            balance_before=balance_before,
            balance_after=balance_after,
            activity=activity,
            label=context_label,
            channel=channel,
            activated=card_state == "PENDING",
        )

        result = GiftCardLoadResult(
            success=True,
            gift_card_id=gift_card_id,
            gift_card_gan=gan,
            delivery_channel=channel,
            balance_cents=balance_after,
            activity_id=activity.get("id"),
        )
        try:
            refreshed = await self._square.retrieve_gift_card(gift_card_id)
        except SquareAPIError as exc:
            _log_square_failure("Unable to refresh gift card delivery details", exc, gift_card_id=gift_card_id)
            result.warnings.append("digital-details-unavailable")
        else:
            details = refreshed.get("digital_details") or {}
            result.activation_url = details.get("activation_url") or None
            result.pass_kit_url = details.get("pass_kit_url") or None
            result.digital_email = details.get("email") or None

        logger.info(
            "Loaded gift card",
            gift_card_id=gift_card_id,
            amount_cents=amount_cents,
            balance_cents=balance_after,
            channel=channel,
        )

        if customer_id and gan:
            await self.append_gift_card_note(customer_id, gan, amount_cents, context_label)
        if gan and self._notifications is not None:
            self._notifications.queue_wallet_pass_update(
                gan, reason="gift-card-balance-update", metadata={"giftCardId": gift_card_id}
            )
        return result

    async def create_promotion_order(
        self,
        customer_id: str | None,
        amount_cents: int,
        reference_label: str,
        *,
        idempotency_seed: str | None = None,
    ) -> PromotionOrder | None:
        """Create a single GIFT_CARD line item order used for eGift activation."""

        if not self._location_id or amount_cents is None:
            return None
        seed = idempotency_seed or build_idempotency_key(["promo-order", customer_id or "anon", amount_cents])
        line_uid = f"line-{secrets.token_hex(4)}"
        label = (reference_label or "Referral promotion")[:60]
        order: dict[str, Any] = {
            "location_id": self._location_id,
            "reference_id": label,
            "line_items": [
                {
                    "uid": line_uid,
                    "name": label,
                    "quantity": "1",
                    "base_price_money": self._money(amount_cents),
                    "item_type": "GIFT_CARD",
                }
            ],
        }
        if customer_id:
            order["customer_id"] = customer_id
        try:
            created = await self._square.create_order(
                idempotency_key=build_idempotency_key([seed, "create"]),
                order=order,
            )
        except SquareAPIError as exc:
            _log_square_failure("Failed to create promotion order", exc, customer_id=customer_id)
            return None
        if not created.get("id"):
            logger.warning("Promotion order missing id; continuing without order reference")
            return None
        # Square may rewrite line item uids on an idempotent replay.
        items = created.get("line_items") or []
        if items and items[0].get("uid"):
            line_uid = items[0]["uid"]
        return PromotionOrder(order_id=created["id"], line_item_uid=line_uid, amount_cents=amount_cents)

    async def complete_promotion_payment(
        self,
        order: PromotionOrder,
        reference_label: str | None = None,
        *,
        idempotency_seed: str | None = None,
    ) -> str | None:
        """Pay a promotion order with a CASH tender; returns the payment id when COMPLETED."""

        if not self._location_id:
            return None
        seed = idempotency_seed or build_idempotency_key(["promo-payment", order.order_id, order.amount_cents])
        money = self._money(order.amount_cents)
        request: dict[str, Any] = {
            "idempotency_key": build_idempotency_key([seed, "create"]),
            "source_id": "CASH",
            "location_id": self._location_id,
            "order_id": order.order_id,
            "amount_money": money,
            "cash_details": {
                "buyer_supplied_money": money,
                "change_back_money": self._money(0),
            },
        }
        if reference_label:
            request["note"] = reference_label[:60]
        try:
            payment = await self._square.create_payment(request)
        except SquareAPIError as exc:
            _log_square_failure("Failed to complete promotion payment", exc, order_id=order.order_id)
            return None
        if payment.get("status") == "COMPLETED":
            logger.info("Promotion order paid", order_id=order.order_id, payment_id=payment.get("id"))
            return payment.get("id")
        logger.warning(
            "Promotion payment did not complete",
            order_id=order.order_id,
            status=payment.get("status") or "unknown",
        )
        return None

    async def append_gift_card_note(
        self,
        customer_id: str,
        gift_card_gan: str,
        amount_cents: int,
        label: str | None = None,
    ) -> bool:
        issued_on = datetime.now(timezone.utc).date().isoformat()
        entry = f"[{issued_on}] {label or 'Referral gift card'}: {gift_card_gan} (${amount_cents / 100:.2f})"
        return await self._append_note(customer_id, entry, markers=(gift_card_gan,))

    async def append_referral_note(self, customer_id: str, referral_code: str, referral_url: str) -> bool:
        if not referral_code or not referral_url:
            return False
        issued_on = datetime.now(timezone.utc).date().isoformat()
        entry = f"[{issued_on}] Personal referral code: {referral_code} – {referral_url}"
        return await self._append_note(customer_id, entry, markers=(referral_code, referral_url))

    async def _append_note(self, customer_id: str, entry: str, *, markers: tuple[str, ...]) -> bool:
        if not customer_id:
            return False
        try:
            customer = await self._square.retrieve_customer(customer_id)
            existing = (customer.get("note") or "").strip()
            if existing and any(marker in existing for marker in markers):
                return False
            note = f"{existing}\n{entry}" if existing else entry
            await self._square.update_customer(customer_id, {"note": note})
        except SquareAPIError as exc:
            _log_square_failure("Unable to update customer note", exc, customer_id=customer_id)
            return False
        return True

    async def _try_activity(self, key: str, body: dict[str, Any], *, step: str) -> dict[str, Any] | None:
        try:
            activity = await self._square.create_gift_card_activity(idempotency_key=key, activity=body)
        except SquareAPIError as exc:
            _log_square_failure("Gift card funding step failed", exc, step=step, gift_card_id=body["gift_card_id"])
            return None
        if not activity:
            logger.warning("Gift card funding step returned no activity", step=step)
            return None
        logger.info("Gift card funding step succeeded", step=step, activity_id=activity.get("id"))
        return activity

    # Ledger writes: best-effort, never raise.

    async def _record_created(
        self,
        intent: RewardIntent,
        gift_card_id: str,
        gan: str | None,
        state: str,
        amount_cents: int,
        square_card: dict[str, Any],
    ) -> None:
        reward_type = (
            GiftCardRewardType.REFERRER_REWARD if intent.kind == "referrer" else GiftCardRewardType.FRIEND_SIGNUP_BONUS
        )
        try:
            session = await open_session(self._session_factory)
            async with session as db:
                record = await _card_by_square_id(db, gift_card_id)
                if record is None:
                    record = GiftCard(
                        square_gift_card_id=gift_card_id,
                        square_customer_id=intent.customer_id,
                        gift_card_gan=gan,
                        reward_type=reward_type,
                        state=state,
                        initial_amount_cents=amount_cents,
                        current_balance_cents=0,
                        square_order_id=intent.order_id,
                        line_item_uid=intent.line_item_uid,
                    )
                    db.add(record)
                    await db.flush()
                    db.add(
                        GiftCardTransaction(
                            gift_card_id=record.id,
                            transaction_type=GiftCardTransactionType.CREATE,
                            amount_cents=0,
                            balance_before_cents=0,
                            balance_after_cents=0,
                            context_label=intent.note_label,
                            metadata_json={"square_response": square_card},
                        )
                    )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to record gift card creation", gift_card_id=gift_card_id, error=str(exc))

    async def _record_verified(
        self,
        gift_card_id: str,
        *,
        gan: str | None,
        state: str,
        balance_cents: int,
        activation_url: str | None,
        pass_kit_url: str | None,
        digital_email: str | None,
        activity: dict[str, Any] | None,
        amount_cents: int,
        order_id: str | None,
        reason: str,
        label: str,
        channel: str | None,
    ) -> None:
        try:
            session = await open_session(self._session_factory)
            async with session as db:
                record = await _card_by_square_id(db, gift_card_id)
                if record is None:
                    return
                record.current_balance_cents = balance_cents
                record.activation_url = activation_url
                record.pass_kit_url = pass_kit_url
                record.digital_email = digital_email
                record.gift_card_gan = gan or record.gift_card_gan
                record.state = state
                record.delivery_channel = channel
                record.last_balance_check_at = datetime.now(timezone.utc)
                transaction_type = _transaction_type(activity)
                if transaction_type is not None:
                    await _add_transaction(
                        db,
                        record,
                        transaction_type=transaction_type,
                        amount_cents=amount_cents,
                        balance_before=0,
                        balance_after=balance_cents,
                        activity=activity or {},
                        order_id=order_id,
                        reason=reason,
                        label=label,
                        channel=channel,
                    )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to record verified gift card", gift_card_id=gift_card_id, error=str(exc))

    async def _record_load(
        self,
        gift_card_id: str,
        *,
        transaction_type: GiftCardTransactionType,
        amount_cents: int,
        balance_before: int,
        balance_after: int,
        activity: dict[str, Any],
        label: str,
        channel: str,
        activated: bool,
    ) -> None:
        try:
            session = await open_session(self._session_factory)
            async with session as db:
                record = await _card_by_square_id(db, gift_card_id)
                if record is None:
                    logger.warning("Gift card not mirrored locally; skipping ledger entry", gift_card_id=gift_card_id)
                    return
                await _add_transaction(
                    db,
                    record,
                    transaction_type=transaction_type,
                    amount_cents=amount_cents,
                    balance_before=balance_before,
                    balance_after=balance_after,
                    activity=activity,
                    order_id=None,
                    reason="COMPLIMENTARY",
                    label=label,
                    channel=channel,
                )
                record.current_balance_cents = balance_after
                if activated:
                    record.state = "ACTIVE"
                record.last_balance_check_at = datetime.now(timezone.utc)
                await db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to record gift card load", gift_card_id=gift_card_id, error=str(exc))


async def _card_by_square_id(db, gift_card_id: str) -> GiftCard | None:
    result = await db.execute(select(GiftCard).where(GiftCard.square_gift_card_id == gift_card_id))
    return result.scalar_one_or_none()


def _transaction_type(activity: dict[str, Any] | None) -> GiftCardTransactionType | None:
    if not activity:
        return None
    kind = activity.get("type")
    if kind == "ACTIVATE":
        return GiftCardTransactionType.ACTIVATE
    if kind == "ADJUST_INCREMENT":
        return GiftCardTransactionType.ADJUST_INCREMENT
    return None


async def _add_transaction(
    db,
    record: GiftCard,
    *,
    transaction_type: GiftCardTransactionType,
    amount_cents: int,
    balance_before: int,
    balance_after: int,
    activity: dict[str, Any],
    order_id: str | None,
    reason: str,
    label: str,
    channel: str | None,
) -> None:
    activity_id = activity.get("id")
    if activity_id:
        existing = await db.execute(
            select(GiftCardTransaction.id).where(GiftCardTransaction.square_activity_id == activity_id)
        )
        if existing.scalar_one_or_none() is not None:
            return
    db.add(
        GiftCardTransaction(
            gift_card_id=record.id,
            transaction_type=transaction_type,
            amount_cents=amount_cents,
            balance_before_cents=balance_before,
            balance_after_cents=balance_after,
            square_activity_id=activity_id,
            square_order_id=order_id,
            reason=reason,
            context_label=label,
            metadata_json={"square_activity": activity, "delivery_channel": channel},
        )
    )


__all__ = ["RewardEngine"]
