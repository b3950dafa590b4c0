"""Tracking for best-effort background side effects."""
import asyncio
from typing import Any, Coroutine, Set

from credit_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class TaskTracker:
    """
    Owns fire-and-forget tasks spawned while serving requests.

    Tasks are never awaited on the response path. The tracker holds a strong
    reference to each one until it finishes, logs failures, and lets the
    application wait for outstanding work at shutdown.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Schedule a coroutine and track it until completion."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled", extra={"task": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed",
                extra={"task": task.get_name(), "error": str(exc)},
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for outstanding tasks, cancelling whatever exceeds the timeout."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning(
                f"Cancelled {len(still_pending)} background task(s) at shutdown"
            )
            await asyncio.gather(*still_pending, return_exceptions=True)
