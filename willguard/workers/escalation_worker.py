from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from willguard.core.config import get_settings
from willguard.services.notifications import HttpNotificationChannel
from willguard.services.scheduler import run_scheduler_cycle, run_scheduler_loop

logger = logging.getLogger(__name__)


async def run_scheduler_job(ctx, force: bool = False) -> dict:
    # Cron and ad-hoc enqueues share the scan lock, so overlapping jobs skip instead of racing.
    channel = ctx.get("channel") or HttpNotificationChannel()
    return await run_scheduler_cycle(force=force, channel=channel)


async def _startup(ctx) -> None:
    ctx["channel"] = HttpNotificationChannel()
    if get_settings().scheduler_embedded_loop:
        # Fixed-interval loop alongside cron for deployments that disable arq cron.
        ctx["scheduler_task"] = asyncio.create_task(run_scheduler_loop())
    logger.info("escalation_worker_started")


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


def _cron_minutes() -> set[int]:
    step = max(1, min(60, int(get_settings().scheduler_cron_minute_step)))
    return set(range(0, 60, step))


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.scheduler_queue_name
    functions = [run_scheduler_job]
    cron_jobs = [cron(run_scheduler_job, minute=_cron_minutes(), run_at_startup=False, unique=True)]
    on_startup = _startup
    on_shutdown = _shutdown
