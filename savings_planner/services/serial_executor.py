"""FIFO single-flight execution of async critical sections."""

import asyncio
import weakref
from typing import Any, Awaitable, Callable, TypeVar

from savings_planner.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AsyncSerialExecutor:
    """Runs submitted coroutines one at a time, in submission order.

    ``asyncio.Lock`` wakes waiters first-in first-out, so critical sections
    are entered in the order they were submitted. One lock is kept per event
    loop because a lock cannot be shared between loops.
    """

    def __init__(self, name: str = "serial"):
        self.name = name
        self._locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
            weakref.WeakKeyDictionary()
        )

    def _lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        lock = self._locks.get(loop)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[loop] = lock
        return lock

    async def run(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``operation(*args, **kwargs)`` inside the critical section.

        Exceptions raised by the operation propagate to the caller and release
        the section for the next submission.
        """
        lock = self._lock()
        if lock.locked():
            logger.debug("Waiting for serial executor", executor=self.name)
        async with lock:
            return await operation(*args, **kwargs)
