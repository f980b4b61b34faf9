"""Per-key de-duplication of in-flight mutations.

At most one action runs per key. Callers arriving while it is in flight join
it and receive the same outcome instead of starting a second remote call.
"""

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Set, TypeVar

from feedsync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ActionQueue:
    """Registry of pending actions keyed by logical action identity."""

    def __init__(self):
        self._pending: Dict[str, asyncio.Task] = {}
        # Tasks released by clear() that must still run to completion
        self._detached: Set[asyncio.Task] = set()

    async def execute(self, key: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run `action` unless one is already in flight for `key`.

        Cancelling a caller does not cancel the shared action: side effects
        on the server must complete once sent.
        """
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(action())
            self._pending[key] = task
            task.add_done_callback(partial(self._settle, key))
            logger.debug("Action started", action_key=key)
        else:
            logger.debug("Joining in-flight action", action_key=key)

        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        self._detached.discard(task)

        if task.cancelled():
            logger.warning("Action cancelled", action_key=key)
        elif task.exception() is not None:
            logger.debug("Action failed", action_key=key, error=str(task.exception()))
        else:
            logger.debug("Action settled", action_key=key)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    @property
    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def clear(self) -> None:
        """Forget every registration (sign-out). Running actions still finish."""
        for task in self._pending.values():
            if not task.done():
                self._detached.add(task)
        count = len(self._pending)
        self._pending.clear()
        if count:
            logger.info("Pending action registry cleared", released=count)

    async def drain(self) -> List[Any]:
        """Wait for every running action, including released ones."""
        tasks = list(self._pending.values()) + list(self._detached)
        if not tasks:
            return []
        return await asyncio.gather(*tasks, return_exceptions=True)
