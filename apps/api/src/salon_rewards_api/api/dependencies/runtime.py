"""Request-scoped access to the process-wide webhook runtime."""

from __future__ import annotations

from fastapi import Request

from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime


def get_webhook_runtime(request: Request) -> WebhookRuntime:
    runtime = getattr(request.app.state, "webhook_runtime", None)
    if runtime is None:
        runtime = WebhookRuntime.build_default()
        request.app.state.webhook_runtime = runtime
    return runtime


def get_event_router(request: Request) -> EventRouter:
    router = getattr(request.app.state, "event_router", None)
    if router is None:
        runtime = get_webhook_runtime(request)
        dispatcher = None
        if runtime.settings.celery_broker_url:
            from salon_rewards_api.celery_tasks.webhook_jobs import dispatch_to_celery

            dispatcher = dispatch_to_celery
        router = EventRouter(runtime, dispatcher=dispatcher)
        request.app.state.event_router = router
    return router
