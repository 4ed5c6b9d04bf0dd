import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
    timeout_s: Optional[float] = None,
) -> bool:
    """Wait for ``tasks`` (optionally bounded by ``timeout_s``), then always
    cancel stragglers and run ``cleanup``.

    Returns True when every task finished without raising.
    """
    pending: List[asyncio.Task] = list(tasks)
    completed = False
    try:
        if pending:
            done, not_done = await asyncio.wait(pending, timeout=timeout_s)
            if not_done:
                logger.warning("%d task(s) still running after %.1fs", len(not_done), timeout_s)
            failures = [t for t in done if not t.cancelled() and t.exception() is not None]
            for task in failures:
                logger.error("Task %s failed", task.get_name(), exc_info=task.exception())
            completed = not not_done and not failures
        else:
            completed = True
    except asyncio.CancelledError:
        logger.info("Task group cancelled")
    finally:
        for task in pending:
            if not task.done():
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
    return completed
