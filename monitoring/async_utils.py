import asyncio
import logging
import time
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def run_periodically(
    name: str,
    interval_s: float,
    job: Callable[[], Awaitable[None]],
    is_running: Callable[[], bool],
    initial_delay_s: float = 0.0,
) -> None:
    """Run ``job`` on a fixed cadence until ``is_running`` turns false.

    Runs are sequential, so a slow run delays the next one instead of overlapping it.
    A failing run is logged and the schedule continues.
    """
    if initial_delay_s > 0:
        try:
            await asyncio.sleep(initial_delay_s)
        except asyncio.CancelledError:
            return
    while is_running():
        started = time.monotonic()
        try:
            await job()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Periodic job %s failed", name)
        elapsed = time.monotonic() - started
        try:
            await asyncio.sleep(max(interval_s - elapsed, 0.0))
        except asyncio.CancelledError:
            break
