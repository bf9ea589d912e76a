"""
Bounded background task runner.

WHAT:
    Runs fire-and-forget side effects (cache mirroring, insight feeding,
    trainer updates) as asyncio tasks behind a semaphore.

WHY:
    The primary request must never wait for, or fail because of, these side
    effects. Failures are logged and sent to Sentry, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, Set

from clickcredit.telemetry import capture_exception

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """
    Usage:
        runner = BackgroundTaskRunner(max_concurrency=8)
        runner.spawn(cache.put(click), name="cache_put")
        await runner.drain()  # on shutdown / in tests
    """

    def __init__(self, max_concurrency: int = 8):
        self.max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Awaitable[Any], name: str = "background") -> asyncio.Task:
        """Schedule a coroutine on the running loop."""
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
            self._loop = loop
        task = loop.create_task(self._run(coro, name, self._semaphore))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned task (including ones spawned meanwhile) finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, coro: Awaitable[Any], name: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.warning("[BACKGROUND] Task %s failed: %s", name, e)
                capture_exception(e, extra={"operation": "background_task", "task": name})
