from __future__ import annotations

import argparse
import asyncio

from tokenguard.core.logging import configure_logging
from tokenguard.persistence.db import dispose_engine
from tokenguard.services.container import build_services
from tokenguard.services.scheduler import Scheduler, default_jobs, run_task


async def _main(task: str | None) -> None:
    # Run one maintenance cycle, or a single named task, then exit.
    configure_logging()
    services = build_services()
    try:
        if task:
            result = await run_task(services, task)  # type: ignore[arg-type]
            print(f"{task}={result}")
            return
        results = await Scheduler(default_jobs(services)).run_all_once()
        for name, result in results.items():
            print(f"{name}={result}")
    finally:
        await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run token maintenance jobs once.")
    parser.add_argument(
        "--task",
        choices=["expire_tokens", "monthly_rollover", "cost_audit", "webhook_gc"],
        default=None,
    )
    args = parser.parse_args()
    asyncio.run(_main(args.task))
