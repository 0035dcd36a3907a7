from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from salon_rewards_api.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.webhooks.runtime import WebhookRuntime
from .workers import WebhookJobWorker


APP_VERSION = "0.1.0"
SERVICE_NAME = "salon-rewards-api"


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: WebhookRuntime | None = getattr(app.state, "webhook_runtime", None)
    if runtime is None:
        runtime = WebhookRuntime.build_default()
        app.state.webhook_runtime = runtime
    runtime.app_logs.install()

    worker = WebhookJobWorker(runtime)
    app.state.webhook_job_worker = worker
    worker_started = False
    if settings.webhook_job_worker_enabled and not settings.celery_broker_url:
        worker.start()
        worker_started = True
    elif settings.celery_broker_url:
        logger.info(
            "Webhook jobs dispatched to Celery",
            queue=settings.webhook_job_task_queue,
        )
    else:
        logger.info(
            "Webhook job worker disabled",
            reason="webhook_job_worker_enabled is false; jobs drain via cron endpoint",
        )

    if not runtime.square.is_configured:
        logger.warning("Square access token missing; reward issuance will fail until configured")

    try:
        yield
    finally:
        if worker_started and worker.is_running:
            await worker.stop()
        await runtime.notifications.flush()
        await runtime.app_logs.flush()
        runtime.app_logs.uninstall()
        await runtime.square.aclose()


def create_app(runtime: WebhookRuntime | None = None) -> FastAPI:
    """Application factory for the salon rewards webhook service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Salon Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.webhook_runtime = runtime

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name=SERVICE_NAME,
            service_version=APP_VERSION,
            environment=settings.environment,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
            otlp_headers=settings.otel_exporter_otlp_headers,
        )

    app.include_router(api_router)

    return app
