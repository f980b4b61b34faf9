"""Contracts for the remote data source and the push channel.

The engine treats the backend as opaque: paged reads, single-entity reads,
mutations returning authoritative counters/flags, and payload-free push
notifications.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from feedsync.core.logging import get_logger
from feedsync.models.feed import ChannelStatus, PushEvent

logger = get_logger(__name__)

Record = Dict[str, Any]
EventHandler = Callable[[PushEvent], None]
StatusHandler = Callable[[ChannelStatus], None]
Unsubscribe = Callable[[], Awaitable[None]]


class RemoteDataSource(Protocol):
    """Protocol for remote backends (enables duck typing and test fakes)."""

    async def fetch_page(self, kind: str, limit: int, offset: int,
                         params: Optional[Dict[str, Any]] = None) -> List[Record]:
        """Return at most `limit` rows starting at `offset`.

        A short or empty page signals end-of-data.
        """
        ...

    async def fetch_one(self, kind: str, entity_id: str) -> Optional[Record]:
        """Return one row, or None when it no longer exists."""
        ...

    async def mutate(self, kind: str, entity_id: str, action: str, actor_id: str,
                     payload: Optional[Dict[str, Any]] = None) -> Record:
        """Perform `action` and return the server's resulting counters/flags."""
        ...


class PushSource(Protocol):
    """Protocol for realtime change channels."""

    def subscribe(self, kind: str, on_event: EventHandler,
                  on_status: StatusHandler) -> Unsubscribe:
        """Open a channel for `kind`. Returns an async teardown callable."""
        ...


class NullPushSource:
    """Push source that never connects.

    Null Object pattern: subscribers fall back to polling after the connect
    timeout.
    """

    def subscribe(self, kind: str, on_event: EventHandler,
                  on_status: StatusHandler) -> Unsubscribe:
        logger.debug("Push channel disabled, polling only", entity_kind=kind)

        async def unsubscribe() -> None:
            return None

        return unsubscribe
