from __future__ import annotations

import asyncio

import pytest

from tokenguard.services.scheduler import PeriodicJob, Scheduler, default_jobs, run_task
from tokenguard.services.ledger import CreditRequest
from tokenguard.tests.utils.factories import create_user, get_user


@pytest.mark.asyncio
async def test_run_task_dispatches_maintenance_jobs(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro")
    await services.ledger.credit(
        user_id, CreditRequest(type="purchase", tokens=25, package_id="small", external_reference="pi_sched")
    )
    clock.advance(days=91)

    expired = await run_task(services, "expire_tokens")

    assert expired.tokens_removed == 25
    assert (await get_user(session_factory, user_id)).token_balance == 0
    assert await run_task(services, "webhook_gc") == 0
    with pytest.raises(ValueError):
        await run_task(services, "reindex")


@pytest.mark.asyncio
async def test_default_jobs_run_one_cycle(services, session_factory, clock) -> None:
    await create_user(session_factory, now=clock(), tier="starter", monthly_used=30)

    scheduler = Scheduler(default_jobs(services))
    results = await scheduler.run_all_once()

    assert [job.name for job in scheduler.jobs] == [
        "expire_tokens",
        "monthly_rollover",
        "cost_audit",
        "webhook_gc",
    ]
    assert results["expire_tokens"].expired_count == 0
    assert results["monthly_rollover"].scanned == 0
    assert results["cost_audit"].healthy == 1
    assert results["webhook_gc"] == 0


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_the_cycle() -> None:
    ran: list[str] = []

    async def broken() -> None:
        raise RuntimeError("boom")

    async def healthy() -> str:
        ran.append("healthy")
        return "ok"

    scheduler = Scheduler([PeriodicJob("broken", 60, broken), PeriodicJob("healthy", 60, healthy)])

    results = await scheduler.run_all_once()

    assert results == {"broken": None, "healthy": "ok"}
    assert ran == ["healthy"]
    with pytest.raises(KeyError):
        await scheduler.run_once("missing")


@pytest.mark.asyncio
async def test_loops_keep_running_after_failures() -> None:
    calls = 0
    done = asyncio.Event()

    async def flaky() -> None:
        nonlocal calls
        calls += 1
        if calls >= 3:
            done.set()
        raise RuntimeError("transient")

    async def no_sleep(_: float) -> None:
        await asyncio.sleep(0)

    scheduler = Scheduler([PeriodicJob("flaky", 1, flaky)], sleep=no_sleep)
    scheduler.start()
    await asyncio.wait_for(done.wait(), timeout=1)
    await scheduler.stop()

    assert calls >= 3
