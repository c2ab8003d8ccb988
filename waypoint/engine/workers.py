"""Bounded thread pool for blocking filesystem and git checks."""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BlockingIOPool:
    """Run blocking callables off the event loop with an optional timeout.

    A timed-out call raises ``asyncio.TimeoutError``; the worker thread is
    left to finish on its own since threads cannot be interrupted.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="waypoint-io"
            )
        return self._executor

    async def run(
        self,
        func: Callable[..., T],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self.executor, functools.partial(func, *args, **kwargs)
        )
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout=timeout)

    def shutdown(self, wait: bool = False) -> None:
        if self._executor is not None:
            logger.debug("Shutting down blocking I/O pool")
            self._executor.shutdown(wait=wait)
            self._executor = None
