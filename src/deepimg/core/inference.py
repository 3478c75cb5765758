"""Classification concurrency layer.

Architecture:
    FastAPI (async) -> [asyncio.Semaphore(N)] -> ThreadPoolExecutor -> Hugging Face HTTP call

Without ``max_concurrent`` every request is admitted immediately (unbounded
fan-out). With it, requests beyond the limit queue, optionally with a timeout.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from deepimg.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ClassificationPool:
    """Runs blocking classification calls off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._limit = settings.max_concurrent
        self._queue_timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(self._limit) if self._limit is not None else None
        self._executor = ThreadPoolExecutor(
            max_workers=self._limit or settings.fanout_workers,
            thread_name_prefix="hf-classify",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the thread pool.

        Raises:
            TimeoutError: If a bounded pool cannot admit the call within ``queue_timeout``.
        """
        if self._semaphore is None:
            return await self._execute(func, *args)

        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        try:
            return await self._execute(func, *args)
        finally:
            self._semaphore.release()

    async def _execute(self, func: Callable[..., T], *args: object) -> T:
        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            with self._counter_lock:
                self._active_count -= 1

    @property
    def bounded(self) -> bool:
        return self._semaphore is not None

    @property
    def active_count(self) -> int:
        """Number of currently running classification calls."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
