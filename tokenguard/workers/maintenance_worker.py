from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from tokenguard.core.config import get_settings
from tokenguard.core.logging import configure_logging
from tokenguard.persistence.db import dispose_engine
from tokenguard.services.container import build_services
from tokenguard.services.scheduler import (
    run_audit_job,
    run_expire_job,
    run_rollover_job,
    run_webhook_gc_job,
)

logger = logging.getLogger(__name__)


async def expire_tokens(ctx: dict[str, Any]) -> dict[str, int]:
    result = await run_expire_job(ctx["services"])
    return {"expired": result.expired_count, "removed": result.tokens_removed, "errors": result.errors}


async def monthly_rollover(ctx: dict[str, Any]) -> dict[str, int]:
    result = await run_rollover_job(ctx["services"])
    return {"reset": result.reset, "rollover_tokens": result.rollover_tokens, "errors": result.errors}


async def cost_audit(ctx: dict[str, Any]) -> dict[str, Any]:
    report = await run_audit_job(ctx["services"])
    return report.summary()


async def webhook_gc(ctx: dict[str, Any]) -> int:
    return await run_webhook_gc_job(ctx["services"])


async def _startup(ctx: dict[str, Any]) -> None:
    # Build the service container once per worker process.
    configure_logging()
    ctx["services"] = build_services()
    logger.info("maintenance_worker_started")


async def _shutdown(ctx: dict[str, Any]) -> None:
    await dispose_engine()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    functions = [expire_tokens, monthly_rollover, cost_audit, webhook_gc]
    # Hourly expiry, rollover shortly after midnight UTC, audit every four hours, daily GC.
    cron_jobs = [
        cron(expire_tokens, minute=5, run_at_startup=False),
        cron(monthly_rollover, hour={0}, minute=10),
        cron(cost_audit, hour={0, 4, 8, 12, 16, 20}, minute=20),
        cron(webhook_gc, hour={3}, minute=30),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
