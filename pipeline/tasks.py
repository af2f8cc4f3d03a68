"""
Cancellable periodic background tasks. Each task owns its own stop signal and
is joined on stop() instead of polling a shared running flag.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `fn` every `interval_sec` until stopped. An exception in one
    iteration is logged and the loop continues after `error_backoff_sec`.
    The first run happens after one interval unless run_immediately is set.
    """

    def __init__(
        self,
        name: str,
        interval_sec: float,
        fn: Callable[[], Awaitable[None]],
        error_backoff_sec: float | None = None,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self._interval = interval_sec
        self._fn = fn
        self._backoff = interval_sec if error_backoff_sec is None else error_backoff_sec
        self._run_immediately = run_immediately
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self.iterations = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name=self.name)

    async def stop(self) -> None:
        """Signal the loop and wait for it to exit. Safe to call from inside fn."""
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sleep(self, stop: asyncio.Event, seconds: float) -> bool:
        """Wait up to `seconds`. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self, stop: asyncio.Event) -> None:
        if not self._run_immediately and await self._sleep(stop, self._interval):
            return
        while not stop.is_set():
            try:
                await self._fn()
                self.iterations += 1
                wait = self._interval
            except Exception:
                self.failures += 1
                logger.exception("Periodic task '%s' iteration failed, retrying in %.1fs", self.name, self._backoff)
                wait = self._backoff
            if stop.is_set() or await self._sleep(stop, wait):
                return
