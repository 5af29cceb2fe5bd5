"""Coalescing scheduler — trailing debounce on the asyncio event loop.

schedule(fn, delay) cancels any pending call and re-arms the timer, so a burst
of triggers results in one call ``delay`` seconds after the last trigger.
"""
import asyncio
from typing import Callable

import structlog

log = structlog.get_logger()


class CoalescingScheduler:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, fn: Callable[[], object], delay: float) -> None:
        if self._closed:
            return
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, fn)

    def _fire(self, fn: Callable[[], object]) -> None:
        self._handle = None
        try:
            fn()
        except Exception as exc:
            log.error("scheduler.callback_failed", error=str(exc))

    def flush(self, fn: Callable[[], object]) -> None:
        """Run ``fn`` now and drop any pending trailing call."""
        self.cancel()
        fn()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def close(self) -> None:
        self._closed = True
        self.cancel()
