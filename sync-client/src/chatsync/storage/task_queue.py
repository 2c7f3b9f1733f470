"""Single-worker sequential task executor."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SerialTaskQueue:
    """Runs submitted coroutines one at a time, in submission order.

    A task starts only after the previous one has finished, whether it
    succeeded, failed or was cancelled. Failures are visible to whoever awaits
    the returned task and never block later submissions.

    Must be used from a running event loop.
    """

    def __init__(self, name: str):
        self.name = name
        self._tail: Optional[asyncio.Task] = None

    def submit(self, factory: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """Queue `factory()` behind every task submitted so far.

        Args:
            factory: Zero-argument callable returning the awaitable to run

        Returns:
            Task resolving to the factory's result
        """
        task = asyncio.ensure_future(self._run_after(self._tail, factory))
        task.add_done_callback(self._log_failure)
        self._tail = task
        return task

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tail is not None and not self._tail.done():
            await asyncio.wait([self._tail])

    @property
    def idle(self) -> bool:
        return self._tail is None or self._tail.done()

    @staticmethod
    async def _run_after(previous: Optional[asyncio.Task], factory: Callable[[], Awaitable[T]]) -> T:
        if previous is not None and not previous.done():
            # wait() never raises the previous task's error
            await asyncio.wait([previous])
        return await factory()

    def _log_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("%s queue task failed: %r", self.name, error)
