import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional


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


async def run_periodic(
    name: str,
    interval_s: float,
    tick: Callable[[], Awaitable[None]],
    is_running: Callable[[], bool],
) -> None:
    """Call ``tick`` every ``interval_s`` until ``is_running`` turns false.

    A failing tick is logged and the loop carries on with the next one.
    """
    while is_running():
        try:
            await tick()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("%s tick failed", name)
        try:
            await asyncio.sleep(interval_s)
        except asyncio.CancelledError:
            break


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    pending = [t for t in tasks if t is not None and not t.done()]
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
