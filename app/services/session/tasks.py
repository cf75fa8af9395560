"""Detached background tasks owned by one call session."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Spawns fire-and-forget tasks whose failures are logged, never raised.

    Holding a reference to each task keeps it from being garbage collected
    before it finishes.
    """

    def __init__(self, owner: str = "session"):
        self.owner = owner
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Run a coroutine in the background."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        name: Optional[str] = None,
    ) -> asyncio.Task:
        """Run ``callback()`` once after ``delay`` seconds."""

        async def _delayed() -> None:
            await asyncio.sleep(delay)
            await callback()

        return self.spawn(_delayed(), name=name)

    def cancel(self, task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done():
            task.cancel()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(
                f"[TASKS] Cancelling {len(pending)} unfinished background tasks - Owner: {self.owner}"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"[TASKS] Task cancelled - Owner: {self.owner}, Task: {task.get_name()}")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"[TASKS] Background task failed - Owner: {self.owner}, Task: {task.get_name()}, "
                f"Error: {type(exc).__name__}: {exc}",
                exc_info=exc,
            )
