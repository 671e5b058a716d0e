import asyncio
import inspect
from typing import Any, Callable, Optional, Set

from chatstream_service.core.logging import logger


def fire_and_forget(
    fn: Callable[..., Any],
    *args: Any,
    tasks: Optional[Set[asyncio.Task]] = None,
    label: str = "callback",
) -> Optional[asyncio.Task]:
    """
    Invoke fn without waiting for it.
    Coroutines become tasks on the running loop (tracked in `tasks` until done);
    without a running loop they are run to completion. Failures are logged, never raised.
    """
    try:
        result = fn(*args)
    except Exception:
        logger.exception(f"{label} failed")
        return None

    if not inspect.isawaitable(result):
        return None

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is None:
        try:
            asyncio.run(_await(result))
        except Exception:
            logger.exception(f"{label} failed")
        return None

    task = loop.create_task(_await(result))
    if tasks is not None:
        tasks.add(task)
        task.add_done_callback(tasks.discard)
    task.add_done_callback(lambda t: _log_failure(t, label))
    return task


async def _await(awaitable) -> Any:
    return await awaitable


def _log_failure(task: asyncio.Task, label: str) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"{label} failed: {exc!r}", exc_info=exc)


async def drain_tasks(tasks: Set[asyncio.Task]) -> None:
    """Wait for every tracked task; their failures were already logged."""
    while True:
        pending = [t for t in tasks if not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)
