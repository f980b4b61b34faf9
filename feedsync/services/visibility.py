"""Foreground/background monitor that forces a freshness check after long idles."""

import asyncio
from typing import Awaitable, Callable, List, Optional

from feedsync.core.clock import Clock, SystemClock
from feedsync.core.logging import get_logger

logger = get_logger(__name__)

ResumeCallback = Callable[[], Awaitable[object]]


class VisibilityMonitor:
    """Tracks visibility transitions and runs resume callbacks when stale.

    Returning to the foreground after more than ``stale_threshold`` seconds in
    the background schedules a debounced check; shorter absences do nothing.
    """

    def __init__(self, clock: Optional[Clock] = None, stale_threshold: float = 30.0,
                 debounce: float = 1.0):
        self.clock = clock or SystemClock()
        self.stale_threshold = stale_threshold
        self.debounce = debounce
        self.foreground = True
        self.hidden_at: Optional[float] = None
        self._callbacks: List[ResumeCallback] = []
        self._pending: Optional[asyncio.Task] = None

    def add_callback(self, callback: ResumeCallback) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: ResumeCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def on_hidden(self) -> None:
        self.foreground = False
        self.hidden_at = self.clock.now()

    def on_visible(self) -> bool:
        """Returns True when a freshness check was scheduled."""
        was_hidden_at = self.hidden_at
        self.foreground = True
        self.hidden_at = None

        if was_hidden_at is None:
            return False

        away = self.clock.now() - was_hidden_at
        if away <= self.stale_threshold:
            logger.debug("Resumed within threshold, skipping refresh", away=away)
            return False

        logger.info("Resumed after long idle, scheduling freshness check", away=away)
        if self._pending and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.ensure_future(self._check())
        return True

    async def _check(self) -> None:
        await self.clock.sleep(self.debounce)
        for callback in list(self._callbacks):
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Resume callback failed", error=str(e))

    async def close(self) -> None:
        self._callbacks.clear()
        if self._pending and not self._pending.done():
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
        self._pending = None
