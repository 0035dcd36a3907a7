"""Classify Square webhook events and run or enqueue their pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger

from salon_rewards_api.models.workflow_run import WorkflowRunStatus
from salon_rewards_api.services.bookings.service import booking_base_id, booking_customer_id
from salon_rewards_api.services.jobs.queue import QueuedJob
from salon_rewards_api.services.payments.recorder import payment_customer_id
from salon_rewards_api.services.runs.idempotency import build_correlation_id

from .processors import RunContext, WebhookPipelines
from .runtime import WebhookRuntime
from .stages import BOOKING, BOOKING_UPDATE, CUSTOMER_INGEST, PAYMENT, PAYMENT_SAVE, token

Pipeline = Callable[[Mapping[str, Any], RunContext], Awaitable[dict[str, Any]]]
JobDispatcher = Callable[[QueuedJob], None]


@dataclass(slots=True)
class RouteResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _merchant_id(event: Mapping[str, Any], resource: Mapping[str, Any] | None) -> str | None:
    resource = resource or {}
    return (
        event.get("merchant_id")
        or event.get("merchantId")
        or resource.get("merchant_id")
        or resource.get("merchantId")
    )


class EventRouter:
    """Routes ``customer.*``, ``booking.*`` and ``payment.*`` events.

    When the job queue is available the pipeline is enqueued and the run is
    recorded as ``{stage}:queued`` (HTTP 202). Otherwise the pipeline runs
    inline between ``{stage}:start`` and ``{stage}:completed`` (HTTP 200).
    Pipeline failures are acknowledged with 200 so Square does not redeliver;
    the run row carries the error.
    """

    def __init__(
        self,
        runtime: WebhookRuntime,
        *,
        pipelines: WebhookPipelines | None = None,
        dispatcher: JobDispatcher | None = None,
    ) -> None:
        self._runtime = runtime
        self._tracker = runtime.tracker
        self._jobs = runtime.jobs
        self._store = runtime.observability
        self.pipelines = pipelines or WebhookPipelines(runtime)
        self._dispatcher = dispatcher
        self._handlers: dict[str, Pipeline] = {
            CUSTOMER_INGEST: self.pipelines.customer_ingest,
            BOOKING: self.pipelines.booking_created,
            BOOKING_UPDATE: self.pipelines.booking_updated,
            PAYMENT: self.pipelines.payment_completed,
            PAYMENT_SAVE: self.pipelines.save_payment,
        }

    async def route(self, event: Mapping[str, Any]) -> RouteResult:
        event_type = str(event.get("type") or "unknown")
        event_id = event.get("event_id") or event.get("eventId")
        data = event.get("data") or {}
        data_object = data.get("object") or {}
        self._store.record_received(event_type, event_id)
        logger.info("Square webhook received", event_type=event_type, event_id=event_id)

        if event_type == "customer.created":
            return await self._customer_created(event, data_object.get("customer"))
        if event_type == "booking.created":
            return await self._booking_created(event, data_object.get("booking"))
        if event_type == "booking.updated":
            return await self._booking_updated(event, data_object.get("booking") or data.get("booking"))
        if event_type in {"payment.created", "payment.updated"}:
            return await self._payment(event, data_object.get("payment"))

        self._store.record_ignored(event_type)
        return RouteResult(200, {"success": True, "message": "Webhook received", "eventType": event_type})

    async def _customer_created(self, event: Mapping[str, Any], customer: Mapping[str, Any] | None) -> RouteResult:
        customer_id = (customer or {}).get("id") or (customer or {}).get("customer_id")
        if not customer_id:
            logger.warning("customer.created without customer id", event_id=event.get("event_id"))
            return RouteResult(200, {"message": "Webhook received"})
        return await self._dispatch(
            event,
            CUSTOMER_INGEST,
            customer,
            resource_id=customer_id,
            context={"customerId": customer_id},
            id_field="customerId",
        )

    async def _booking_created(self, event: Mapping[str, Any], booking: Mapping[str, Any] | None) -> RouteResult:
        customer_id = booking_customer_id(booking) if booking else None
        if not customer_id:
            logger.warning(
                "booking.created without customer id",
                event_id=event.get("event_id"),
                booking_id=booking_base_id(booking) if booking else None,
            )
            return RouteResult(200, {"message": "Webhook received"})
        booking_id = booking_base_id(booking)
        return await self._dispatch(
            event,
            BOOKING,
            booking,
            resource_id=booking_id or customer_id,
            context={"customerId": customer_id, "bookingId": booking_id},
            id_field="bookingId",
        )

    async def _booking_updated(self, event: Mapping[str, Any], booking: Mapping[str, Any] | None) -> RouteResult:
        event_type = str(event.get("type"))
        if not booking or not booking_base_id(booking):
            logger.warning("booking.updated without booking data", event_id=event.get("event_id"))
            return RouteResult(400, {"success": False, "error": "Booking data missing from webhook"})
        booking_id = booking_base_id(booking)
        ctx = self._context(event, booking, booking_id)
        try:
            result = await self.pipelines.booking_updated(booking, ctx)
        except Exception as exc:
            # Square retries on 5xx, which is the recovery path for booking updates.
            self._store.record_failure(event_type, str(exc))
            logger.exception("booking.updated processing failed", booking_id=booking_id)
            return RouteResult(500, {"success": False, "error": str(exc)})
        self._store.record_processed(event_type)
        return RouteResult(200, {"success": True, "processed": True, **result})

    async def _payment(self, event: Mapping[str, Any], payment: Mapping[str, Any] | None) -> RouteResult:
        event_type = str(event.get("type"))
        if not payment:
            logger.warning("Payment webhook without payment data", event_type=event_type)
            return RouteResult(200, {"message": "Webhook received"})

        payment_id = payment.get("id")
        customer_id = payment_customer_id(payment)
        await self._save_payment(event, payment)
        if event_type == "payment.updated":
            await self.pipelines.record_redemptions(payment)

        if payment.get("status") != "COMPLETED":
            return RouteResult(200, {"success": True, "paymentId": payment_id, "status": payment.get("status")})
        return await self._dispatch(
            event,
            PAYMENT,
            payment,
            resource_id=payment_id or customer_id,
            context={"customerId": customer_id, "paymentId": payment_id},
            id_field="paymentId",
        )

    async def _save_payment(self, event: Mapping[str, Any], payment: Mapping[str, Any]) -> None:
        """Record the payment first; on failure hand the write to the job queue."""

        payment_id = payment.get("id")
        ctx = self._context(event, payment, payment_id or payment_customer_id(payment) or "payment-save-fallback")
        try:
            await self.pipelines.save_payment(payment, ctx)
            return
        except Exception as exc:
            logger.warning("Immediate payment save failed; enqueueing fallback job", payment_id=payment_id, error=str(exc))
        try:
            job = await self._jobs.enqueue(
                correlation_id=ctx.correlation_id,
                stage=PAYMENT_SAVE,
                payload=dict(payment),
                trigger_type=ctx.event_type or "unknown",
                context=ctx.as_job_context(paymentId=payment_id, customerId=payment_customer_id(payment), fallback=True),
            )
        except Exception as exc:
            logger.error("Failed to enqueue payment save job", payment_id=payment_id, error=str(exc))
            return
        if job is not None:
            self._notify_dispatcher(job)

    async def _dispatch(
        self,
        event: Mapping[str, Any],
        stage: str,
        resource: Mapping[str, Any],
        *,
        resource_id: str | None,
        context: dict[str, Any],
        id_field: str,
    ) -> RouteResult:
        event_type = str(event.get("type"))
        event_id = event.get("event_id")
        ctx = self._context(event, resource, resource_id)
        cid = ctx.correlation_id
        run_fields = {
            "trigger_type": event_type,
            "square_event_id": event_id,
            "square_event_type": event_type,
            "resource_id": resource_id,
            "payload": dict(resource),
            "context": context,
        }

        job = None
        if await self._jobs.is_available():
            # The run row must exist before a worker can lock the job.
            await self._tracker.ensure_run(cid, stage=token(stage, "queued"), status=WorkflowRunStatus.QUEUED, **run_fields)
            job = await self._jobs.enqueue(
                correlation_id=cid,
                stage=stage,
                payload=dict(resource),
                trigger_type=event_type,
                context=ctx.as_job_context(**context),
            )
        if job is not None:
            self._store.record_queued(event_type)
            logger.bind(persist=True, log_type="webhook_job", log_id=cid, status="queued").info(
                "Webhook job enqueued", stage=stage, event_type=event_type, resource_id=resource_id
            )
            self._notify_dispatcher(job)
            return RouteResult(202, {"success": True, "queued": True, "correlationId": cid, id_field: resource_id})

        await self._tracker.ensure_run(cid, stage=token(stage, "start"), status=WorkflowRunStatus.RUNNING, **run_fields)
        try:
            await self._handlers[stage](resource, ctx)
        except Exception as exc:
            self._store.record_failure(event_type, str(exc))
            logger.bind(persist=True, log_type="webhook", log_id=cid, status="error").exception(
                "Webhook processing failed", stage=stage, event_type=event_type
            )
            return RouteResult(200, {"error": str(exc), "acknowledged": True, "correlationId": cid})

        await self._tracker.update_stage(
            cid, stage=token(stage, "completed"), status=WorkflowRunStatus.COMPLETED, clear_error=True
        )
        self._store.record_processed(event_type)
        return RouteResult(200, {"success": True, "processed": True, "correlationId": cid, id_field: resource_id})

    async def process_job(self, job: QueuedJob) -> dict[str, Any]:
        """Run the pipeline for a locked job; raises so the caller can reschedule it."""

        handler = self._handlers.get(job.stage)
        if handler is None:
            raise ValueError(f"Unknown webhook job stage: {job.stage}")
        ctx = RunContext.from_job(job.correlation_id, job.context)
        tracked = job.stage != PAYMENT_SAVE
        if tracked:
            await self._tracker.update_stage(
                job.correlation_id,
                stage=token(job.stage, "start"),
                status=WorkflowRunStatus.RUNNING,
            )
        result = await handler(job.payload or {}, ctx)
        if tracked:
            await self._tracker.update_stage(
                job.correlation_id,
                stage=token(job.stage, "completed"),
                status=WorkflowRunStatus.COMPLETED,
                clear_error=True,
            )
        if ctx.event_type:
            self._store.record_processed(ctx.event_type)
        return result

    def _context(self, event: Mapping[str, Any], resource: Mapping[str, Any] | None, resource_id: str | None) -> RunContext:
        event_type = str(event.get("type") or "unknown")
        event_id = event.get("event_id")
        return RunContext(
            correlation_id=build_correlation_id(event_type, event_id, resource_id),
            event_type=event_type,
            event_id=event_id,
            merchant_id=_merchant_id(event, resource),
            event_created_at=event.get("created_at"),
        )

    def _notify_dispatcher(self, job: QueuedJob) -> None:
        if self._dispatcher is None:
            return
        try:
            self._dispatcher(job)
        except Exception:
            logger.exception("Job dispatch failed; the job stays queued for polling", job_id=str(job.id))


__all__ = ["EventRouter", "JobDispatcher", "RouteResult"]
