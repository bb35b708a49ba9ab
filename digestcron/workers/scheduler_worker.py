from __future__ import annotations

import logging

from arq.connections import RedisSettings
from arq.cron import cron

from digestcron.core.config import get_settings
from digestcron.core.logging import configure_logging
from digestcron.services.scheduler.orchestrator import run_scheduler_tick

logger = logging.getLogger(__name__)


async def scheduler_tick(ctx) -> dict:
    # One tick per firing; overlapping firings are skipped by the tick lease.
    result = await run_scheduler_tick()
    logger.info(
        "worker_tick ok=%s skipped=%s ran_jobs=%s",
        result.ok,
        bool(result.skipped),
        len(result.ran_jobs),
    )
    return result.to_json_dict()


def tick_minutes(every: int) -> set[int]:
    # Minutes of the hour at which the worker fires; clamped to 1..60.
    step = min(60, max(1, int(every)))
    return set(range(0, 60, step))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("scheduler_worker_started")


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scheduler_queue_name
    functions = [scheduler_tick]
    cron_jobs = [
        cron(scheduler_tick, minute=tick_minutes(settings.scheduler_tick_minutes), run_at_startup=False),
    ]
    on_startup = _startup
