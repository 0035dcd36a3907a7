"""Observability snapshot for Square webhook intake."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from salon_rewards_api.api.dependencies.security import require_cron_secret
from salon_rewards_api.observability.webhooks import get_webhook_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/webhooks",
    dependencies=[Depends(require_cron_secret)],
    summary="Square webhook observability snapshot",
)
async def get_webhook_snapshot() -> dict[str, object]:
    store = get_webhook_store()
    return store.snapshot().as_dict()
