import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


async def run_periodically(job: Callable[[], Any], interval_seconds: float, name: str) -> None:
    """Runs ``job`` now and then every ``interval_seconds`` until cancelled.

    The job is synchronous (it talks to the database) so it runs in a worker
    thread. A failing run is logged and the loop carries on.
    """
    logger.info("Starting periodic job %s (every %ss)", name, interval_seconds)
    while True:
        try:
            await asyncio.to_thread(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic job %s failed", name)
        await asyncio.sleep(interval_seconds)


def start_background_jobs(jobs) -> list:
    """Schedules (job, interval, name) triples on the running loop and returns their tasks."""
    return [asyncio.create_task(run_periodically(job, interval, name)) for job, interval, name in jobs]


async def stop_background_jobs(tasks) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
