"""Process-wide collaborators shared by the webhook route, job worker and Celery task."""

from __future__ import annotations

from dataclasses import dataclass, field

from salon_rewards_api.core.settings import Settings, get_settings
from salon_rewards_api.observability.webhooks import WebhookObservabilityStore, get_webhook_store
from salon_rewards_api.services.jobs.queue import WebhookJobQueue
from salon_rewards_api.services.logs.application_log import ApplicationLogWriter
from salon_rewards_api.services.notifications.service import NotificationService
from salon_rewards_api.services.rewards.engine import RewardEngine
from salon_rewards_api.services.runs.availability import SessionFactory
from salon_rewards_api.services.runs.tracker import RunTracker
from salon_rewards_api.services.square.client import SquareClient, get_square_client


@dataclass(slots=True)
class WebhookRuntime:
    session_factory: SessionFactory
    square: SquareClient
    tracker: RunTracker
    jobs: WebhookJobQueue
    notifications: NotificationService
    engine: RewardEngine
    app_logs: ApplicationLogWriter
    settings: Settings = field(default_factory=get_settings)
    observability: WebhookObservabilityStore = field(default_factory=get_webhook_store)

    @classmethod
    def build(
        cls,
        session_factory: SessionFactory,
        *,
        square: SquareClient | None = None,
        notifications: NotificationService | None = None,
        tracker: RunTracker | None = None,
        jobs: WebhookJobQueue | None = None,
        app_logs: ApplicationLogWriter | None = None,
        settings: Settings | None = None,
    ) -> "WebhookRuntime":
        settings = settings or get_settings()
        square = square or get_square_client()
        notifications = notifications or NotificationService(square=square, settings=settings)
        return cls(
            session_factory=session_factory,
            square=square,
            tracker=tracker or RunTracker(session_factory),
            jobs=jobs or WebhookJobQueue(session_factory),
            notifications=notifications,
            engine=RewardEngine(
                square,
                session_factory,
                notifications=notifications,
                location_id=settings.square_location_id,
                currency=settings.referral_currency,
            ),
            app_logs=app_logs or ApplicationLogWriter(session_factory),
            settings=settings,
        )

    @classmethod
    def build_default(cls) -> "WebhookRuntime":
        from salon_rewards_api.db.session import async_session

        return cls.build(async_session)


__all__ = ["WebhookRuntime"]
