"""Fire-and-forget task submission with an observable error channel."""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Deque, Optional, Set

from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("background")


@dataclass
class BackgroundFailure:
    """A background task that raised."""

    name: str
    error: BaseException
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundTaskRunner:
    """
    Run coroutines without blocking the caller.

    Submitted tasks are tracked until they finish so they are not garbage
    collected mid-flight. Failures are logged and kept in a bounded deque
    that callers (health checks, tests) can inspect.
    """

    def __init__(self, max_failures: int = 100) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.failures: Deque[BackgroundFailure] = deque(maxlen=max_failures)

    def submit(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        """Schedule `coro` on the running loop and return its task."""
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background task cancelled: name={task.get_name()}")
            return
        error = task.exception()
        if error is not None:
            self.failures.append(BackgroundFailure(name=task.get_name(), error=error))
            logger.warning(
                f"Background task failed: name={task.get_name()}, error={error}",
                exc_info=error,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all in-flight tasks (used on shutdown and in tests)."""
        if not self._tasks:
            return
        done, not_done = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} background task(s) still running at drain")


_runner: Optional[BackgroundTaskRunner] = None


def get_background_runner() -> BackgroundTaskRunner:
    """Get the process-wide background runner."""
    global _runner
    if _runner is None:
        _runner = BackgroundTaskRunner()
    return _runner
