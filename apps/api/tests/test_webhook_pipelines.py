from __future__ import annotations

import pytest
from sqlalchemy import select

from salon_rewards_api.models.booking import Booking
from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.models.gift_card import (
    GiftCard,
    GiftCardRewardType,
    GiftCardTransaction,
    GiftCardTransactionType,
)
from salon_rewards_api.models.payment import SquarePayment
from salon_rewards_api.models.workflow_run import WorkflowRun
from salon_rewards_api.services.bookings.service import BookingService
from salon_rewards_api.services.runs.idempotency import build_correlation_id
from salon_rewards_api.services.webhooks.processors import RunContext, WebhookPipelines
from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.services.webhooks.stages import PAYMENT_SAVE

from conftest import MERCHANT_ID, ORGANIZATION_ID, square_event


def _ctx(event_type: str, correlation_id: str = "test-run") -> RunContext:
    return RunContext(correlation_id=correlation_id, event_type=event_type, event_id="evt-1", merchant_id=MERCHANT_ID)


async def _add_customer(session_factory, customer_id: str, **fields) -> None:
    values = {
        "square_customer_id": customer_id,
        "organization_id": ORGANIZATION_ID,
        "given_name": "Test",
        "family_name": "Client",
        "email_address": f"{customer_id.lower()}@example.test",
        "phone_number": "+15550100",
    }
    values.update(fields)
    async with session_factory() as session:
        session.add(SquareCustomer(**values))
        await session.commit()


def _booking(booking_id: str, customer_id: str, code: str | None = None, **extra) -> dict:
    booking = {"id": booking_id, "customer_id": customer_id, "location_id": "LOC1", "version": 1, **extra}
    if code:
        booking["custom_fields"] = [{"name": "Referral code", "string_value": code}]
    return booking


@pytest.mark.asyncio
async def test_existing_referrer_cannot_claim_friend_bonus(runtime, session_factory, fake_square) -> None:
    await _add_customer(session_factory, "REF1", personal_code="BOB5678", activated_as_referrer=True)
    await _add_customer(session_factory, "CUST9", personal_code="ANA0009", activated_as_referrer=True)
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.booking_created(_booking("BKG1", "CUST9", "BOB5678"), _ctx("booking.created"))

    assert result["skipped"] == "self-referral"
    assert fake_square.gift_cards == {}
    assert fake_square.calls("POST", "/v2/orders") == []


@pytest.mark.asyncio
async def test_own_code_is_a_self_referral(runtime, session_factory, fake_square) -> None:
    await _add_customer(session_factory, "CUST9", personal_code="ANA0009")
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.booking_created(_booking("BKG1", "CUST9", "ana0009"), _ctx("booking.created"))

    assert result["skipped"] == "self-referral"
    assert fake_square.gift_cards == {}


@pytest.mark.asyncio
async def test_second_booking_does_not_issue_another_bonus(runtime, session_factory, fake_square) -> None:
    await _add_customer(session_factory, "REF1", personal_code="BOB5678", activated_as_referrer=True)
    await _add_customer(session_factory, "CUST9", got_signup_bonus=True, gift_card_id="gftc:9999")
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.booking_created(_booking("BKG2", "CUST9", "BOB5678"), _ctx("booking.created"))

    assert result["skipped"] == "already-rewarded"
    assert fake_square.gift_cards == {}
    async with session_factory() as session:
        rows = (await session.execute(select(Booking))).scalars().all()
    assert [row.booking_id for row in rows] == ["BKG2"]


@pytest.mark.asyncio
async def test_booking_without_referral_code_only_saves_booking(runtime, session_factory, fake_square) -> None:
    await _add_customer(session_factory, "CUST9")
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.booking_created(_booking("BKG3", "CUST9"), _ctx("booking.created"))

    assert result["referralCode"] is None
    assert fake_square.gift_cards == {}


@pytest.mark.asyncio
async def test_booking_without_resolvable_organization_fails(runtime, session_factory) -> None:
    pipelines = WebhookPipelines(runtime)
    ctx = RunContext(correlation_id="test-run", event_type="booking.created")

    with pytest.raises(Exception, match="Unable to resolve organization"):
        await pipelines.booking_created({"id": "BKG4", "customer_id": "CUST9", "location_id": "LOC_UNKNOWN"}, ctx)


@pytest.mark.asyncio
async def test_customer_ingest_skips_enrolled_customers(runtime, session_factory, email_backend) -> None:
    await _add_customer(session_factory, "CUST9", personal_code="ANA0009", activated_as_referrer=True)
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.customer_ingest({"id": "CUST9", "given_name": "Ana"}, _ctx("customer.created"))

    assert result == {"customerId": "CUST9", "skipped": "already-enrolled"}
    assert email_backend.sent_messages == []


@pytest.mark.asyncio
async def test_booking_update_patches_every_segment_row(runtime, session_factory) -> None:
    async with session_factory() as session:
        await BookingService(session).save_booking(
            {
                "id": "BKG1",
                "status": "ACCEPTED",
                "appointment_segments": [{"service_variation_id": "SV1"}, {"service_variation_id": "SV2"}],
            },
            customer_id="CUST1",
            organization_id=ORGANIZATION_ID,
        )
    router = EventRouter(runtime)

    result = await router.route(
        square_event(
            "booking.updated",
            "booking",
            {"id": "BKG1", "status": "CANCELLED_BY_CUSTOMER", "version": 3, "customer_note": "Running late"},
        )
    )

    assert result.status_code == 200
    assert result.body == {"success": True, "processed": True, "bookingId": "BKG1", "updated": 2}
    async with session_factory() as session:
        rows = (await session.execute(select(Booking).order_by(Booking.booking_id))).scalars().all()
    assert [(row.booking_id, row.status, row.version) for row in rows] == [
        ("BKG1-SV1", "CANCELLED_BY_CUSTOMER", 3),
        ("BKG1-SV2", "CANCELLED_BY_CUSTOMER", 3),
    ]
    assert rows[0].customer_note == "Running late"


@pytest.mark.asyncio
async def test_booking_update_for_unknown_booking_self_heals(runtime, session_factory) -> None:
    router = EventRouter(runtime)

    result = await router.route(square_event("booking.updated", "booking", _booking("BKG7", "CUST1", status="ACCEPTED")))

    assert result.status_code == 200
    assert result.body["created"] == 1
    async with session_factory() as session:
        row = (await session.execute(select(Booking))).scalar_one()
    assert (row.booking_id, row.organization_id, row.customer_id) == ("BKG7", ORGANIZATION_ID, "CUST1")


@pytest.mark.asyncio
async def test_booking_update_without_self_heal_flags_run(runtime, session_factory) -> None:
    runtime.settings = runtime.settings.model_copy(update={"booking_update_self_heal": False})
    router = EventRouter(runtime)

    result = await router.route(square_event("booking.updated", "booking", _booking("BKG8", "CUST1")))

    assert result.status_code == 200
    assert result.body["missing"] is True
    async with session_factory() as session:
        bookings = (await session.execute(select(Booking))).scalars().all()
        run = (
            await session.execute(
                select(WorkflowRun).where(
                    WorkflowRun.correlation_id == build_correlation_id("booking.updated", "evt-1", "BKG8")
                )
            )
        ).scalar_one()
    assert bookings == []
    assert (run.stage, run.status) == ("booking_update:missing", "error")


@pytest.mark.asyncio
async def test_booking_update_without_booking_is_rejected(runtime) -> None:
    router = EventRouter(runtime)

    result = await router.route({"type": "booking.updated", "event_id": "evt-1", "data": {"object": {}}})

    assert result.status_code == 400
    assert result.body == {"success": False, "error": "Booking data missing from webhook"}


@pytest.mark.asyncio
async def test_booking_update_failure_returns_server_error(runtime, monkeypatch) -> None:
    router = EventRouter(runtime)

    async def broken(booking, ctx):
        raise RuntimeError("database offline")

    monkeypatch.setattr(router.pipelines, "booking_updated", broken)

    result = await router.route(square_event("booking.updated", "booking", _booking("BKG9", "CUST1")))

    assert result.status_code == 500
    assert result.body == {"success": False, "error": "database offline"}


@pytest.mark.asyncio
async def test_promotion_order_payment_is_skipped(runtime, session_factory, fake_square) -> None:
    await _add_customer(session_factory, "REF1", personal_code="BOB5678", activated_as_referrer=True)
    await _add_customer(
        session_factory, "CUST9", used_referral_code="BOB5678", gift_card_order_id="order:promo", gift_card_id="gftc:1"
    )
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.payment_completed(
        {"id": "PAY1", "customer_id": "CUST9", "order_id": "order:promo", "status": "COMPLETED"},
        _ctx("payment.created"),
    )

    assert result["skipped"] == "promotion-order"
    assert fake_square.calls("POST", "/v2/gift-cards") == []
    async with session_factory() as session:
        customer = (
            await session.execute(select(SquareCustomer).where(SquareCustomer.square_customer_id == "CUST9"))
        ).scalar_one()
    assert customer.first_payment_completed is False


@pytest.mark.asyncio
async def test_payment_from_unknown_customer_is_skipped(runtime) -> None:
    pipelines = WebhookPipelines(runtime)

    result = await pipelines.payment_completed(
        {"id": "PAY1", "customer_id": "NOBODY", "status": "COMPLETED"}, _ctx("payment.created")
    )

    assert result["skipped"] == "unknown-customer"


@pytest.mark.asyncio
async def test_redemptions_are_recorded_once(runtime, session_factory, fake_square) -> None:
    card = fake_square.add_gift_card(state="ACTIVE", balance=1000)
    async with session_factory() as session:
        session.add(
            GiftCard(
                square_gift_card_id=card["id"],
                square_customer_id="CUST9",
                gift_card_gan=card["gan"],
                reward_type=GiftCardRewardType.FRIEND_SIGNUP_BONUS,
                state="ACTIVE",
                initial_amount_cents=1000,
                current_balance_cents=1000,
            )
        )
        await session.commit()
    fake_square.add_redemption(card["id"], 400, payment_id="PAY5", order_id="ORD5")
    payment = {
        "id": "PAY5",
        "order_id": "ORD5",
        "status": "COMPLETED",
        "tenders": [{"type": "SQUARE_GIFT_CARD", "gift_card_details": {"gan": card["gan"]}}],
    }
    pipelines = WebhookPipelines(runtime)

    assert await pipelines.record_redemptions(payment) == 1
    assert await pipelines.record_redemptions(payment) == 0

    async with session_factory() as session:
        local = (await session.execute(select(GiftCard))).scalar_one()
        transactions = (await session.execute(select(GiftCardTransaction))).scalars().all()
    assert local.current_balance_cents == 600
    assert [(t.transaction_type, t.amount_cents, t.balance_before_cents, t.balance_after_cents) for t in transactions] == [
        (GiftCardTransactionType.REDEEM, -400, 1000, 600)
    ]
    assert transactions[0].square_payment_id == "PAY5"


@pytest.mark.asyncio
async def test_redemption_lookup_failure_is_not_fatal(runtime, session_factory, fake_square) -> None:
    card = fake_square.add_gift_card(state="ACTIVE", balance=1000)
    async with session_factory() as session:
        session.add(
            GiftCard(
                square_gift_card_id=card["id"],
                gift_card_gan=card["gan"],
                reward_type=GiftCardRewardType.REFERRER_REWARD,
            )
        )
        await session.commit()
    fake_square.fail("GET", "/v2/gift-cards/activities")
    pipelines = WebhookPipelines(runtime)

    recorded = await pipelines.record_redemptions(
        {"id": "PAY6", "tenders": [{"type": "SQUARE_GIFT_CARD", "gift_card_details": {"gan": card["gan"]}}]}
    )

    assert recorded == 0


@pytest.mark.asyncio
async def test_failed_payment_save_is_handed_to_the_queue(queued_runtime, session_factory, monkeypatch) -> None:
    router = EventRouter(queued_runtime)

    async def broken(payment, ctx):
        raise RuntimeError("deadlock detected")

    monkeypatch.setattr(router.pipelines, "save_payment", broken)
    payment = {"id": "PAY7", "customer_id": "CUST1", "status": "APPROVED", "location_id": "LOC1"}

    result = await router.route(square_event("payment.updated", "payment", payment))

    assert result.body == {"success": True, "paymentId": "PAY7", "status": "APPROVED"}
    cid = build_correlation_id("payment.updated", "evt-1", "PAY7")
    job = await queued_runtime.jobs.find(cid, PAYMENT_SAVE)
    assert job is not None
    assert job.context["fallback"] is True

    # The fallback job runs the real save.
    [locked] = await queued_runtime.jobs.lock_next("test-worker")
    await router.process_job(locked)
    async with session_factory() as session:
        saved = (await session.execute(select(SquarePayment))).scalar_one()
    assert (saved.square_payment_id, saved.organization_id) == ("PAY7", ORGANIZATION_ID)
