from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Literal

from tokenguard.services.container import Services
from tokenguard.services.costs.protection import AuditReport
from tokenguard.services.ledger import ExpireResult
from tokenguard.services.rollover import RolloverSweepResult


logger = logging.getLogger(__name__)


MaintenanceTask = Literal["expire_tokens", "monthly_rollover", "cost_audit", "webhook_gc"]


async def run_expire_job(services: Services) -> ExpireResult:
    return await services.ledger.expire()


async def run_rollover_job(services: Services) -> RolloverSweepResult:
    return await services.rollover.sweep()


async def run_audit_job(services: Services) -> AuditReport:
    return await services.monitor.perform_system_audit()


async def run_webhook_gc_job(services: Services) -> int:
    return await services.webhooks.garbage_collect()


_TASKS: dict[str, Callable[[Services], Awaitable[Any]]] = {
    "expire_tokens": run_expire_job,
    "monthly_rollover": run_rollover_job,
    "cost_audit": run_audit_job,
    "webhook_gc": run_webhook_gc_job,
}


async def run_task(services: Services, task: MaintenanceTask) -> Any:
    job = _TASKS.get(task)
    if job is None:
        raise ValueError(f"Unknown maintenance task: {task}")
    return await job(services)


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    interval_s: int
    func: Callable[[], Awaitable[Any]]


def default_jobs(services: Services) -> list[PeriodicJob]:
    # Cadences come from settings so deployments can tune sweep pressure.
    settings = services.settings
    return [
        PeriodicJob("expire_tokens", settings.expire_interval_s, lambda: run_expire_job(services)),
        PeriodicJob("monthly_rollover", settings.rollover_interval_s, lambda: run_rollover_job(services)),
        PeriodicJob("cost_audit", settings.audit_interval_s, lambda: run_audit_job(services)),
        PeriodicJob("webhook_gc", settings.webhook_gc_interval_s, lambda: run_webhook_gc_job(services)),
    ]


class Scheduler:
    """In-process runner for periodic maintenance jobs.

    Each job runs in its own loop, so a slow audit never delays expiry.
    A failed run is logged and the loop keeps its cadence.
    """

    def __init__(self, jobs: list[PeriodicJob], *, sleep: Callable[[float], Awaitable[None]] | None = None) -> None:
        self._jobs = {job.name: job for job in jobs}
        self._sleep = sleep or asyncio.sleep
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs.values())

    async def run_once(self, name: str) -> Any:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        return await job.func()

    async def run_all_once(self) -> dict[str, Any]:
        # One cycle of every job; a failing job is reported as None.
        results: dict[str, Any] = {}
        for job in self._jobs.values():
            try:
                results[job.name] = await job.func()
            except Exception:  # noqa: BLE001 - keep running the remaining jobs
                logger.exception("maintenance_job_failed job=%s", job.name)
                results[job.name] = None
        return results

    async def _loop(self, job: PeriodicJob) -> None:
        interval = max(1, int(job.interval_s))
        while True:
            try:
                await job.func()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs
                logger.exception("maintenance_job_failed job=%s", job.name)
            await self._sleep(interval)

    def start(self) -> None:
        if self._tasks:
            return
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"tokenguard:{job.name}"))
        logger.info("scheduler_started jobs=%s", ",".join(self._jobs))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_stopped")
