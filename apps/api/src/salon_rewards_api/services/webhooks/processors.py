"""Stage pipelines executed for Square webhook events.

Each pipeline opens its own session, commits every write before handing off to
the reward engine or run tracker (which use their own sessions), and records
stage progress on the workflow run identified by ``RunContext.correlation_id``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import func, select

from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.models.referral import ReferralRewardType
from salon_rewards_api.models.workflow_run import WorkflowRunStatus
from salon_rewards_api.observability.tracing import get_tracer
from salon_rewards_api.services.bookings.service import (
    BookingService,
    booking_base_id,
    booking_customer_id,
    booking_location_id,
)
from salon_rewards_api.services.customers.service import CustomerProfile, CustomerService
from salon_rewards_api.services.locations.resolver import OrganizationResolver
from salon_rewards_api.services.notifications.templates import format_usd
from salon_rewards_api.services.payments.recorder import (
    PaymentRecorder,
    payment_customer_id,
    payment_order_id,
)
from salon_rewards_api.services.referrals.codes import find_referrer_by_code, normalize_code
from salon_rewards_api.services.referrals.detection import ReferralCodeDetector
from salon_rewards_api.services.referrals.ledger import ReferralLedger
from salon_rewards_api.services.rewards.types import RewardIntent
from salon_rewards_api.services.runs.availability import open_session
from salon_rewards_api.services.runs.idempotency import (
    build_idempotency_key,
    build_stage_key,
)
from salon_rewards_api.services.square.client import SquareAPIError

from .runtime import WebhookRuntime
from .stages import (
    BOOKING,
    BOOKING_UPDATE,
    CUSTOMER_INGEST,
    FRIEND_REWARD,
    PAYMENT,
    REFERRER_PROMOTION,
    REFERRER_REWARD,
    token,
)


class WebhookProcessingError(RuntimeError):
    """A pipeline finished but recorded at least one failed stage."""


class BookingContextError(RuntimeError):
    """The organization owning a booking could not be resolved."""


@dataclass(slots=True)
class RunContext:
    correlation_id: str
    event_type: str | None = None
    event_id: str | None = None
    merchant_id: str | None = None
    organization_id: str | None = None
    event_created_at: str | None = None

    @classmethod
    def from_job(cls, correlation_id: str, context: Mapping[str, Any] | None) -> "RunContext":
        context = context or {}
        return cls(
            correlation_id=correlation_id,
            event_type=context.get("squareEventType"),
            event_id=context.get("squareEventId"),
            merchant_id=context.get("merchantId"),
            organization_id=context.get("organizationId"),
            event_created_at=context.get("squareCreatedAt"),
        )

    def as_job_context(self, **extra: Any) -> dict[str, Any]:
        context = {
            "squareEventType": self.event_type,
            "squareEventId": self.event_id,
            "merchantId": self.merchant_id,
            "organizationId": self.organization_id,
            "squareCreatedAt": self.event_created_at,
        }
        context.update(extra)
        return {key: value for key, value in context.items() if value is not None}


def _profile_from_row(customer: SquareCustomer) -> CustomerProfile:
    return CustomerProfile(
        customer_id=customer.square_customer_id,
        given_name=customer.given_name,
        family_name=customer.family_name,
        email_address=customer.email_address,
        phone_number=customer.phone_number,
    )


class WebhookPipelines:
    """customer_ingest, booking, payment and booking_update pipelines."""

    def __init__(self, runtime: WebhookRuntime) -> None:
        self._runtime = runtime
        self._settings = runtime.settings
        self._square = runtime.square
        self._tracker = runtime.tracker
        self._engine = runtime.engine
        self._notifications = runtime.notifications
        self._tracer = get_tracer()

    async def _session(self):
        return await open_session(self._runtime.session_factory)

    # customer.created

    async def customer_ingest(self, payload: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        customer_id = payload.get("id") or payload.get("customer_id") or payload.get("customerId")
        if not customer_id:
            logger.warning("customer.created payload without customer id", correlation_id=ctx.correlation_id)
            return {"skipped": "missing-customer-id"}

        with self._tracer.start_as_current_span("webhook.customer_ingest") as span:
            span.set_attribute("square.customer_id", customer_id)
            try:
                return await self._customer_ingest(customer_id, payload, ctx)
            except Exception as exc:
                await self._tracker.mark_error(ctx.correlation_id, exc, stage=token(CUSTOMER_INGEST, "error"))
                raise

    async def _customer_ingest(
        self, customer_id: str, payload: Mapping[str, Any], ctx: RunContext
    ) -> dict[str, Any]:
        session = await self._session()
        async with session as db:
            customers = CustomerService(db)
            existing = await customers.get(customer_id)
            if existing is not None and (existing.activated_as_referrer or existing.got_signup_bonus):
                logger.info("Customer already enrolled; skipping ingest", customer_id=customer_id)
                return {"customerId": customer_id, "skipped": "already-enrolled"}

            profile = CustomerProfile.from_payload(customer_id, payload)
            if not profile.is_complete:
                profile = profile.merge(await self._fetch_profile(customer_id))

            organization_id = ctx.organization_id or await OrganizationResolver(db, self._square).resolve(
                merchant_id=ctx.merchant_id, customer_id=customer_id
            )
            customer = await customers.upsert_profile(profile, organization_id=organization_id)
            identity = await customers.assign_referral_identity(customer, customer_name=profile.display_name)
            if not identity.personal_code:
                return {"customerId": customer_id, "personalCode": None, "conflicted": identity.conflicted}

            await self._publish_referral_code(customer_id, identity.personal_code, identity.referral_url)
            email_sent = False
            if profile.email_address:
                outcome = await self._notifications.send_referral_code_email(
                    customer_name=profile.display_name,
                    email=profile.email_address,
                    referral_code=identity.personal_code,
                    referral_url=identity.referral_url,
                )
                if outcome.sent:
                    email_sent = True
                    await customers.update_fields(customer_id, referral_email_sent=True)

        logger.bind(persist=True, log_type="customer_ingest", log_id=ctx.correlation_id, status="completed").info(
            "Customer ingested", customer_id=customer_id, email_sent=email_sent
        )
        return {
            "customerId": customer_id,
            "personalCode": identity.personal_code,
            "referralUrl": identity.referral_url,
            "emailSent": email_sent,
        }

    # booking.created

    async def booking_created(self, booking: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        customer_id = booking_customer_id(booking)
        booking_id = booking_base_id(booking)
        if not customer_id:
            logger.warning("Booking without customer id; skipping", booking_id=booking_id)
            return {"bookingId": booking_id, "skipped": "missing-customer-id"}

        cid = ctx.correlation_id
        await self._tracker.update_stage(
            cid,
            stage=token(BOOKING, "received"),
            status=WorkflowRunStatus.RUNNING,
            payload=dict(booking),
            context={"customerId": customer_id, "bookingId": booking_id},
        )
        had_error = False
        with self._tracer.start_as_current_span("webhook.booking") as span:
            span.set_attribute("square.customer_id", customer_id)
            span.set_attribute("square.booking_id", booking_id or "")
            try:
                result, had_error = await self._booking_created(booking, customer_id, booking_id, ctx)
            except Exception as exc:
                await self._tracker.mark_error(cid, exc, stage=token(FRIEND_REWARD, "error"))
                raise
        if had_error:
            raise WebhookProcessingError("Booking processing encountered errors")
        await self._tracker.update_stage(
            cid, stage=token(BOOKING, "completed"), status=WorkflowRunStatus.COMPLETED, clear_error=True
        )
        return result

    async def _booking_created(
        self,
        booking: Mapping[str, Any],
        customer_id: str,
        booking_id: str | None,
        ctx: RunContext,
    ) -> tuple[dict[str, Any], bool]:
        cid = ctx.correlation_id
        result: dict[str, Any] = {"bookingId": booking_id, "customerId": customer_id}
        session = await self._session()
        async with session as db:
            resolver = OrganizationResolver(db, self._square)
            organization_id = ctx.organization_id or await resolver.resolve(
                location_id=booking_location_id(booking),
                merchant_id=ctx.merchant_id,
                customer_id=customer_id,
            )
            if not organization_id:
                raise BookingContextError(f"Unable to resolve organization for booking {booking_id}")

            await BookingService(db).save_booking(
                booking, customer_id=customer_id, organization_id=organization_id, merchant_id=ctx.merchant_id
            )

            customers = CustomerService(db)
            customer = await customers.get(customer_id)
            profile = _profile_from_row(customer) if customer is not None else CustomerProfile(customer_id)
            if not profile.is_complete:
                profile = profile.merge(await self._fetch_profile(customer_id))
                customer = await customers.upsert_profile(profile, organization_id=organization_id)

            if customer.got_signup_bonus or customer.gift_card_id:
                logger.info("Customer already received a signup bonus", customer_id=customer_id)
                result["skipped"] = "already-rewarded"
                return result, False

            detector = ReferralCodeDetector(
                self._square,
                lambda code: find_referrer_by_code(db, code, organization_id=organization_id),
            )
            detected = await detector.detect(booking, customer_id)
            if detected is None:
                logger.info("No referral code on booking", booking_id=booking_id, customer_id=customer_id)
                result["referralCode"] = None
                return result, False

            referrer = detected.referrer
            if (
                referrer.square_customer_id == customer_id
                or normalize_code(customer.personal_code) == normalize_code(detected.code)
                or customer.activated_as_referrer
            ):
                logger.warning(
                    "Self-referral ignored",
                    customer_id=customer_id,
                    referral_code=detected.code,
                    source=detected.source,
                )
                result["skipped"] = "self-referral"
                return result, False

            result["referralCode"] = detected.code
            result["referrerId"] = referrer.square_customer_id
            friend_name = customer.display_name or profile.display_name
            friend_email = customer.email_address
            referrer_name = referrer.display_name
            referrer_id = referrer.square_customer_id

        amount = self._settings.referral_reward_amount_cents
        order_id, line_item_uid = await self._fund_promotion(
            customer_id,
            amount,
            order_label=f"Friend signup bonus {format_usd(amount)}",
            payment_label="Friend signup bonus gift card",
            cid=cid,
            stage=FRIEND_REWARD,
        )
        await self._tracker.update_stage(
            cid,
            stage=token(FRIEND_REWARD, "issuing"),
            status=WorkflowRunStatus.RUNNING,
            increment_attempts=True,
            context={"customerId": customer_id, "referralCode": detected.code},
        )
        issued = await self._engine.create_gift_card(
            RewardIntent(
                customer_id=customer_id,
                amount_cents=amount,
                kind="friend",
                customer_name=friend_name,
                order_id=order_id,
                line_item_uid=line_item_uid,
                idempotency_seed=build_stage_key(cid, FRIEND_REWARD, "issue"),
            )
        )
        if issued is None or not issued.gift_card_id:
            await self._tracker.mark_error(
                cid, "Failed to create friend gift card", stage=token(FRIEND_REWARD, "error")
            )
            return result, True

        session = await self._session()
        async with session as db:
            await ReferralLedger(db).upsert_profile(customer_id, used_referral_code=detected.code)
            await CustomerService(db).update_fields(
                customer_id,
                got_signup_bonus=True,
                used_referral_code=detected.code,
                **issued.customer_fields(),
            )
        await self._tracker.update_stage(
            cid,
            stage=token(FRIEND_REWARD, "completed"),
            status=WorkflowRunStatus.RUNNING,
            clear_error=True,
            context={"customerId": customer_id, "giftCardId": issued.gift_card_id},
        )

        await self._notifications.send_gift_card_email(
            customer_name=friend_name,
            email=friend_email or issued.digital_email,
            gift_card_gan=issued.gift_card_gan,
            amount_cents=issued.amount_cents,
            balance_cents=issued.balance_cents,
            activation_url=issued.activation_url,
            pass_kit_url=issued.pass_kit_url,
            gift_card_id=issued.gift_card_id,
            wait_for_pass_kit=True,
        )
        session = await self._session()
        async with session as db:
            await ReferralLedger(db).record_reward(
                referrer_customer_id=referrer_id,
                referred_customer_id=customer_id,
                amount_cents=amount,
                reward_type=ReferralRewardType.FRIEND_SIGNUP_BONUS,
                square_gift_card_id=issued.gift_card_id,
                booking_id=booking_id,
                metadata={"referral_code": detected.code, "source": detected.source},
            )
        await self._notify_admin(
            friend_name=friend_name,
            friend_customer_id=customer_id,
            referrer_name=referrer_name,
            referrer_customer_id=referrer_id,
            referral_code=detected.code,
            booking_id=booking_id,
            gift_card_gan=issued.gift_card_gan,
            amount_cents=amount,
        )
        logger.bind(persist=True, log_type="friend_reward", log_id=cid, status="completed").info(
            "Friend signup bonus issued",
            customer_id=customer_id,
            referrer_id=referrer_id,
            gift_card_id=issued.gift_card_id,
        )
        result["giftCardId"] = issued.gift_card_id
        return result, False

    # payment.created / payment.updated with status COMPLETED

    async def payment_completed(self, payment: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        customer_id = payment_customer_id(payment)
        payment_id = payment.get("id")
        if not customer_id:
            logger.info("Payment without customer id; skipping", payment_id=payment_id)
            return {"paymentId": payment_id, "skipped": "missing-customer-id"}

        cid = ctx.correlation_id
        await self._tracker.update_stage(
            cid,
            stage=token(PAYMENT, "received"),
            status=WorkflowRunStatus.RUNNING,
            payload=dict(payment),
            context={"customerId": customer_id},
        )
        with self._tracer.start_as_current_span("webhook.payment") as span:
            span.set_attribute("square.customer_id", customer_id)
            span.set_attribute("square.payment_id", payment_id or "")
            try:
                result, had_error = await self._payment_completed(payment, customer_id, ctx)
            except Exception as exc:
                await self._tracker.mark_error(cid, exc, stage=token(PAYMENT, "error"))
                raise
        if had_error:
            raise WebhookProcessingError("Payment completion encountered errors")
        return result

    async def _payment_completed(
        self,
        payment: Mapping[str, Any],
        customer_id: str,
        ctx: RunContext,
    ) -> tuple[dict[str, Any], bool]:
        cid = ctx.correlation_id
        payment_id = payment.get("id")
        result: dict[str, Any] = {"paymentId": payment_id, "customerId": customer_id}
        await self.record_redemptions(payment)

        session = await self._session()
        async with session as db:
            customer = await CustomerService(db).get(customer_id)
            if customer is None:
                logger.info("Paying customer not found locally", customer_id=customer_id)
                result["skipped"] = "unknown-customer"
                return result, False

            order_id = payment_order_id(payment)
            if order_id:
                own_order = await db.execute(
                    select(func.count())
                    .select_from(SquareCustomer)
                    .where(SquareCustomer.gift_card_order_id == order_id)
                )
                if own_order.scalar_one():
                    logger.info("Payment settles a promotion order; skipping", payment_id=payment_id, order_id=order_id)
                    result["skipped"] = "promotion-order"
                    return result, False

            if customer.first_payment_completed:
                logger.info("First payment already processed", customer_id=customer_id)
                result["skipped"] = "first-payment-already-processed"
                return result, False
            used_code = customer.used_referral_code
            organization_id = customer.organization_id
            has_email = bool(customer.email_address)

        had_error = False
        if used_code:
            had_error = not await self._reward_referrer(customer_id, used_code, organization_id, payment_id, ctx)

        if has_email:
            await self._tracker.update_stage(
                cid,
                stage=token(REFERRER_PROMOTION, "issuing"),
                status=WorkflowRunStatus.RUNNING,
                increment_attempts=True,
                context={"customerId": customer_id},
            )
            promotion = await self.send_referral_code(customer_id, ctx)
            if promotion.get("success"):
                result["referralCode"] = promotion.get("referralCode")
                await self._tracker.update_stage(
                    cid,
                    stage=token(REFERRER_PROMOTION, "completed"),
                    status=WorkflowRunStatus.RUNNING,
                    clear_error=True,
                    context={"customerId": customer_id, "referralCode": promotion.get("referralCode")},
                )
            else:
                had_error = True
                await self._tracker.mark_error(
                    cid, "Failed to send referral code email", stage=token(REFERRER_PROMOTION, "error")
                )

        if not had_error:
            session = await self._session()
            async with session as db:
                await CustomerService(db).update_fields(customer_id, first_payment_completed=True)
            await self._tracker.update_stage(
                cid, stage=token(PAYMENT, "completed"), status=WorkflowRunStatus.COMPLETED, clear_error=True
            )

        session = await self._session()
        async with session as db:
            gans = await PaymentRecorder(db, self._square).extract_gift_card_gans(payment)
        for gan in gans:
            self._notifications.queue_wallet_pass_update(
                gan, reason="gift-card-payment", metadata={"paymentId": payment_id}
            )
        return result, had_error

    async def _reward_referrer(
        self,
        customer_id: str,
        used_code: str,
        organization_id: str | None,
        payment_id: str | None,
        ctx: RunContext,
    ) -> bool:
        """Issue or load the referrer's reward; returns False when a stage failed."""

        cid = ctx.correlation_id
        session = await self._session()
        async with session as db:
            referrer = await find_referrer_by_code(db, used_code, organization_id=organization_id)
            if referrer is None:
                logger.warning("Referral code no longer maps to a referrer", referral_code=used_code)
                return True
            if referrer.square_customer_id == customer_id:
                logger.warning("Skipping referrer reward for self-referral", customer_id=customer_id)
                return True
            if await ReferralLedger(db).has_reward(referrer.square_customer_id, customer_id):
                logger.info(
                    "Referrer already rewarded for this friend",
                    referrer_id=referrer.square_customer_id,
                    customer_id=customer_id,
                )
                return True
            referrer_id = referrer.square_customer_id
            referrer_name = referrer.display_name
            referrer_email = referrer.email_address
            referrer_card_id = referrer.gift_card_id
            friend = await CustomerService(db).get(customer_id)
            friend_name = friend.display_name if friend is not None else ""

        amount = self._settings.referral_reward_amount_cents
        if not referrer_card_id:
            order_id, line_item_uid = await self._fund_promotion(
                referrer_id,
                amount,
                order_label=f"Referrer reward {format_usd(amount)}",
                payment_label="Referrer reward gift card",
                cid=cid,
                stage=REFERRER_REWARD,
            )
            await self._tracker.update_stage(
                cid,
                stage=token(REFERRER_REWARD, "issuing"),
                status=WorkflowRunStatus.RUNNING,
                increment_attempts=True,
                context={"customerId": customer_id, "referrerId": referrer_id},
            )
            issued = await self._engine.create_gift_card(
                RewardIntent(
                    customer_id=referrer_id,
                    amount_cents=amount,
                    kind="referrer",
                    customer_name=referrer_name,
                    order_id=order_id,
                    line_item_uid=line_item_uid,
                    idempotency_seed=build_stage_key(cid, REFERRER_REWARD, "issue"),
                )
            )
            if issued is None or not issued.gift_card_id:
                await self._tracker.mark_error(
                    cid, "Failed to create referrer gift card", stage=token(REFERRER_REWARD, "error")
                )
                return False
            card_id = issued.gift_card_id
            gan = issued.gift_card_gan
            balance = issued.balance_cents
            activation_url = issued.activation_url
            pass_kit_url = issued.pass_kit_url
            digital_email = issued.digital_email
            card_fields = issued.customer_fields()
            source = "payment.completed"
        else:
            loaded = await self._engine.load_gift_card(
                referrer_card_id,
                amount,
                customer_id=referrer_id,
                context_label="Referrer reward gift card load",
                idempotency_seed=build_stage_key(cid, REFERRER_REWARD, "load"),
            )
            if not loaded.success:
                await self._tracker.mark_error(
                    cid, loaded.error or "Failed to load referrer gift card", stage=token(REFERRER_REWARD, "error")
                )
                return False
            card_id = referrer_card_id
            gan = loaded.gift_card_gan
            balance = loaded.balance_cents
            activation_url = loaded.activation_url
            pass_kit_url = loaded.pass_kit_url
            digital_email = loaded.digital_email
            card_fields = loaded.customer_fields()
            source = "payment.completed (load)"

        session = await self._session()
        async with session as db:
            await CustomerService(db).record_referral_credit(referrer_id, amount, **card_fields)
            await ReferralLedger(db).record_reward(
                referrer_customer_id=referrer_id,
                referred_customer_id=customer_id,
                amount_cents=amount,
                reward_type=ReferralRewardType.REFERRER_REWARD,
                square_gift_card_id=card_id,
                payment_id=payment_id,
                metadata={"referral_code": used_code, "source": source, "gift_card_square_id": card_id},
            )
        await self._tracker.update_stage(
            cid,
            stage=token(REFERRER_REWARD, "completed"),
            status=WorkflowRunStatus.RUNNING,
            clear_error=True,
            context={"customerId": customer_id, "referrerId": referrer_id, "giftCardId": card_id},
        )
        email = referrer_email or digital_email
        if email and gan:
            await self._notifications.send_gift_card_email(
                customer_name=referrer_name or email,
                email=email,
                gift_card_gan=gan,
                amount_cents=amount,
                balance_cents=balance,
                activation_url=activation_url,
                pass_kit_url=pass_kit_url,
                gift_card_id=card_id,
                wait_for_pass_kit=True,
            )
        else:
            logger.info("Referrer gift card email skipped", referrer_id=referrer_id, has_email=bool(email))
        await self._notify_admin(
            friend_name=friend_name,
            friend_customer_id=customer_id,
            referrer_name=referrer_name,
            referrer_customer_id=referrer_id,
            referral_code=used_code,
            booking_id=None,
            gift_card_gan=gan,
            amount_cents=amount,
        )
        logger.bind(persist=True, log_type="referrer_reward", log_id=cid, status="completed").info(
            "Referrer reward issued", referrer_id=referrer_id, customer_id=customer_id, gift_card_id=card_id
        )
        return True

    async def send_referral_code(self, customer_id: str, ctx: RunContext) -> dict[str, Any]:
        """Activate ``customer_id`` as a referrer and deliver their personal code."""

        session = await self._session()
        async with session as db:
            customers = CustomerService(db)
            customer = await customers.get(customer_id)
            if customer is None:
                return {"success": False, "error": "customer-not-found"}
            if customer.activated_as_referrer:
                return {"success": True, "alreadyActivated": True, "referralCode": customer.personal_code}

            name = customer.display_name
            email = customer.email_address
            phone = customer.phone_number
            email_already_sent = customer.referral_email_sent
            sms_already_sent = customer.referral_sms_sent
            card_fields: dict[str, Any] = {}
            if not customer.gift_card_id:
                issued = await self._engine.create_gift_card(
                    RewardIntent(
                        customer_id=customer_id,
                        amount_cents=0,
                        kind="referrer",
                        customer_name=name,
                        order_id=customer.gift_card_order_id if customer.gift_card_line_item_uid else None,
                        line_item_uid=customer.gift_card_line_item_uid,
                    )
                )
                if issued is not None:
                    card_fields = issued.customer_fields()
                else:
                    logger.error("Failed to create referrer gift card", customer_id=customer_id)

            identity = await customers.assign_referral_identity(
                customer,
                customer_name=name,
                extra_fields={
                    "activated_as_referrer": True,
                    "got_signup_bonus": True,
                    "referral_email_sent": True,
                },
            )
            if card_fields:
                await customers.update_fields(
                    customer_id, **{key: value for key, value in card_fields.items() if value is not None}
                )
            if identity.personal_code:
                await self._publish_referral_code(customer_id, identity.personal_code, identity.referral_url)

            if identity.personal_code and email and not email_already_sent:
                outcome = await self._notifications.send_referral_code_email(
                    customer_name=name,
                    email=email,
                    referral_code=identity.personal_code,
                    referral_url=identity.referral_url,
                )
                if not outcome.sent:
                    logger.warning("Referral code email not sent", customer_id=customer_id, reason=outcome.error or outcome.skipped_reason)

            if identity.referral_url and not sms_already_sent:
                sms = await self._notifications.send_referral_code_sms(
                    phone_number=phone, customer_name=name, referral_url=identity.referral_url
                )
                if sms.sent:
                    await customers.update_fields(customer_id, referral_sms_sent=True, referral_sms_sid=sms.provider_id)
                elif sms.skipped_reason:
                    logger.info("Referral SMS skipped", customer_id=customer_id, reason=sms.skipped_reason)

        return {"success": True, "referralCode": identity.personal_code, "referralUrl": identity.referral_url}

    # booking.updated

    async def booking_updated(self, booking: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        booking_id = booking_base_id(booking)
        if not booking_id:
            raise ValueError("Booking data missing from webhook")

        with self._tracer.start_as_current_span("webhook.booking_update") as span:
            span.set_attribute("square.booking_id", booking_id)
            session = await self._session()
            async with session as db:
                bookings = BookingService(db)
                rows = await bookings.apply_update(booking)
                if rows:
                    return {"bookingId": booking_id, "updated": len(rows)}

                if not self._settings.booking_update_self_heal:
                    logger.warning("booking.updated for unknown booking; review required", booking_id=booking_id)
                    await self._tracker.ensure_run(
                        ctx.correlation_id,
                        trigger_type=ctx.event_type or "booking.updated",
                        square_event_id=ctx.event_id,
                        square_event_type=ctx.event_type,
                        resource_id=booking_id,
                        stage=token(BOOKING_UPDATE, "missing"),
                        status=WorkflowRunStatus.ERROR,
                        payload=dict(booking),
                    )
                    return {"bookingId": booking_id, "missing": True}

                customer_id = booking_customer_id(booking)
                organization_id = ctx.organization_id or await OrganizationResolver(db, self._square).resolve(
                    location_id=booking_location_id(booking),
                    merchant_id=ctx.merchant_id,
                    customer_id=customer_id,
                )
                if not organization_id:
                    raise BookingContextError(f"Unable to resolve organization for booking {booking_id}")
                rows = await bookings.save_booking(
                    booking, customer_id=customer_id, organization_id=organization_id, merchant_id=ctx.merchant_id
                )
                logger.info("Created booking from booking.updated", booking_id=booking_id, rows=len(rows))
                return {"bookingId": booking_id, "created": len(rows)}

    # payments

    async def save_payment(self, payment: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        session = await self._session()
        async with session as db:
            organization_id = ctx.organization_id
            if not organization_id:
                organization_id = await OrganizationResolver(db, self._square).resolve(
                    location_id=payment.get("location_id") or payment.get("locationId"),
                    merchant_id=ctx.merchant_id,
                    customer_id=payment_customer_id(payment),
                )
            record = await PaymentRecorder(db, self._square).save_payment(
                payment, event_type=ctx.event_type, organization_id=organization_id
            )
        return {"paymentId": payment.get("id"), "saved": record is not None}

    async def record_redemptions(self, payment: Mapping[str, Any] | None) -> int:
        """Best-effort REDEEM ledger capture; failures are logged and reported as zero."""

        if not payment:
            return 0
        try:
            session = await self._session()
            async with session as db:
                return await PaymentRecorder(db, self._square).record_redemptions(payment)
        except Exception:
            logger.exception("Gift card redemption capture failed", payment_id=payment.get("id"))
            return 0

    # helpers

    async def _fetch_profile(self, customer_id: str) -> CustomerProfile:
        try:
            remote = await self._square.retrieve_customer(customer_id)
        except SquareAPIError as exc:
            logger.warning("Unable to fetch customer from Square", customer_id=customer_id, error=str(exc))
            return CustomerProfile(customer_id)
        return CustomerProfile.from_payload(customer_id, remote)

    async def _publish_referral_code(self, customer_id: str, code: str, url: str | None) -> None:
        try:
            await self._square.upsert_customer_custom_attribute(
                customer_id,
                self._settings.square_referral_code_attribute_key,
                code,
                idempotency_key=build_idempotency_key(["referral-code", customer_id, code]),
            )
        except SquareAPIError as exc:
            logger.warning(
                "Unable to store referral code attribute",
                customer_id=customer_id,
                error=str(exc),
                square_errors=exc.errors,
            )
        if url:
            await self._engine.append_referral_note(customer_id, code, url)

    async def _fund_promotion(
        self,
        customer_id: str,
        amount_cents: int,
        *,
        order_label: str,
        payment_label: str,
        cid: str,
        stage: str,
    ) -> tuple[str | None, str | None]:
        """Create and pay an eGift promotion order; returns (order_id, line_item_uid) when paid."""

        order = await self._engine.create_promotion_order(
            customer_id,
            amount_cents,
            order_label,
            idempotency_seed=build_stage_key(cid, stage, "promo-order"),
        )
        if order is None or not order.line_item_uid:
            logger.warning("Promotion order unavailable; falling back to owner-funded activation", stage=stage)
            return None, None
        payment_id = await self._engine.complete_promotion_payment(
            order,
            payment_label,
            idempotency_seed=build_stage_key(cid, stage, "promo-payment"),
        )
        if not payment_id:
            logger.warning("Promotion payment failed; falling back to owner-funded activation", stage=stage)
            return None, None
        return order.order_id, order.line_item_uid

    async def _notify_admin(self, **details: Any) -> None:
        try:
            await self._notifications.send_admin_referral_notification(**details)
        except Exception:
            logger.exception("Admin referral notification failed", referral_code=details.get("referral_code"))


__all__ = [
    "BookingContextError",
    "RunContext",
    "WebhookPipelines",
    "WebhookProcessingError",
]
