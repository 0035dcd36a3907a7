"""Put workflow runs that ended in ``error`` back on the webhook job queue.

Intended usage: manual invocation after fixing the root cause of a batch of
failed webhooks (expired Square token, missing location, etc).

Example:
    python tooling/scripts/requeue_error_runs.py --limit 20 --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

from loguru import logger

from salon_rewards_api.db.session import async_session
from salon_rewards_api.services.jobs.queue import WebhookJobQueue
from salon_rewards_api.services.runs.recovery import requeue_error_runs
from salon_rewards_api.services.runs.tracker import RunTracker


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Requeue errored webhook runs once")
    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of error runs inspected in this sweep.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which runs would be requeued without touching the queue.",
    )
    return parser.parse_args()


async def _run(limit: int, dry_run: bool) -> dict[str, Any]:
    tracker = RunTracker(async_session)
    queue = WebhookJobQueue(async_session)
    return await requeue_error_runs(tracker, queue, limit=limit, dry_run=dry_run)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.limit, args.dry_run))
    if summary.get("error"):
        logger.error("Requeue aborted", reason=summary["error"])
        return 1
    logger.success(
        "Error run requeue completed",
        scanned=summary["scanned"],
        requeued=summary["requeued"],
        skipped=summary["skipped"],
        dry_run=args.dry_run,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
