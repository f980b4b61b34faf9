"""Time source shared by the cache, timers and the resume monitor."""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Protocol for time sources (enables deterministic tests)."""

    def now(self) -> float:
        """Current time in epoch seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for `seconds`."""
        ...


class SystemClock:
    """Wall-clock time with event-loop sleeps."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))
