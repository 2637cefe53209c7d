import asyncio
import logging
from typing import Any, Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Keeps background tasks alive until they finish and lets callers wait for them."""

    def __init__(self, name: Optional[str] = None):
        self._tasks: Set[asyncio.Task] = set()
        self.name = name

    def __len__(self) -> int:
        return len(self._tasks)

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def create(self, coroutine: Awaitable[Any]) -> asyncio.Task:
        return self.track(asyncio.ensure_future(coroutine))

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task in %s failed: %s", self.name or "registry", exc)

    async def wait_idle(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._tasks.clear()
