"""
Shielded background operations.

Store writes, budget commits and migrations must not be torn in half when the
awaiting caller is cancelled. They run as their own task; if the caller goes
away, the task keeps running and its outcome is logged instead of returned.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_abandoned(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(
            "Operation failed after its caller stopped waiting: %s: %s",
            type(error).__name__, error,
        )


async def run_to_completion(
    operation: Awaitable[T],
    inflight: Optional[Set["asyncio.Future[Any]"]] = None,
) -> T:
    """Await *operation* as a shielded task.

    Args:
        operation: Coroutine or future to run
        inflight: Optional set tracking running tasks; the task removes itself when done
    """
    task = asyncio.ensure_future(operation)
    if inflight is not None:
        inflight.add(task)
        task.add_done_callback(inflight.discard)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(_log_abandoned)
        raise
