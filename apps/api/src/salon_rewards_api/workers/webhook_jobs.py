"""In-process worker draining the webhook job queue."""

from __future__ import annotations

import asyncio

from loguru import logger

from salon_rewards_api.core.settings import settings
from salon_rewards_api.services.webhooks.router import EventRouter
from salon_rewards_api.services.webhooks.runtime import WebhookRuntime
from salon_rewards_api.tasks.webhook_jobs import default_owner, drain_jobs


class WebhookJobWorker:
    """Polls ``giftcard_jobs`` and runs due jobs without Celery."""

    def __init__(
        self,
        runtime: WebhookRuntime,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        owner: str | None = None,
    ) -> None:
        self._runtime = runtime
        self._router = EventRouter(runtime)
        self.interval_seconds = interval_seconds or settings.webhook_job_poll_interval_seconds
        self._batch_size = batch_size or settings.webhook_job_batch_size
        self.owner = owner or default_owner()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Webhook job worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
            owner=self.owner,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Webhook job worker stopped")

    async def run_once(self) -> dict[str, int]:
        """Process up to one batch of due jobs immediately."""

        summary = await drain_jobs(
            runtime=self._runtime,
            owner=self.owner,
            limit=self._batch_size,
            router=self._router,
        )
        return {key: summary[key] for key in ("processed", "succeeded", "failed")}

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = await self.run_once()
                if summary["processed"]:
                    logger.info("Webhook job worker iteration", summary=summary)
            except Exception as exc:  # pragma: no cover
                logger.exception("Webhook job worker iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["WebhookJobWorker"]
