"""Per-identity sync session.

Everything that must not outlive a sign-in (scoped cache entries, the
pending-action registry, open feeds, realtime subscriptions and the resume
monitor) hangs off one SyncSession. Sign-out is ``await session.close()``;
the next sign-in builds a new session.
"""

from typing import Any, Dict, Optional

from feedsync.core.cache import CacheService, ScopedCache
from feedsync.core.clock import Clock, SystemClock
from feedsync.core.config import Settings
from feedsync.core.exceptions import NotAuthenticated
from feedsync.core.logging import get_logger
from feedsync.models.feed import FeedDefinition
from feedsync.services.access import AllowAll, ContentAccessPolicy
from feedsync.services.action_queue import ActionQueue
from feedsync.services.feed_sync import FeedSynchronizer
from feedsync.services.realtime import RealtimeReconciler, RealtimeSubscription
from feedsync.services.remote import NullPushSource, PushSource, RemoteDataSource
from feedsync.services.visibility import ResumeCallback, VisibilityMonitor

logger = get_logger(__name__)


class SyncSession:
    """Session context for one signed-in identity."""

    def __init__(self, identity: str, settings: Settings, cache: CacheService,
                 remote: RemoteDataSource, push: Optional[PushSource] = None,
                 clock: Optional[Clock] = None,
                 access_policy: Optional[ContentAccessPolicy] = None,
                 session_refresher: Optional[ResumeCallback] = None):
        if not identity:
            raise NotAuthenticated()

        self.identity = identity
        self.settings = settings
        self.remote = remote
        self.push = push or NullPushSource()
        self.clock = clock or SystemClock()
        self.access_policy = access_policy or AllowAll()

        self.cache = ScopedCache(cache, identity, settings.cache_namespace)
        self.actions = ActionQueue()
        self.feeds: Dict[str, FeedSynchronizer] = {}
        self.subscriptions: Dict[str, RealtimeSubscription] = {}
        self.monitor = VisibilityMonitor(
            clock=self.clock,
            stale_threshold=settings.resume_stale_threshold,
            debounce=settings.resume_debounce,
        )
        if session_refresher is not None:
            self.monitor.add_callback(session_refresher)

        self.closed = False
        logger.info("Sync session started", identity=identity)

    def _require_open(self) -> None:
        if self.closed:
            raise NotAuthenticated("Session has been closed")

    def open_feed(self, definition: FeedDefinition, realtime: bool = True,
                  params: Optional[Dict[str, Any]] = None) -> FeedSynchronizer:
        """Create (or return the already open) synchronizer for a feed."""
        self._require_open()

        existing = self.feeds.get(definition.kind)
        if existing is not None:
            return existing

        feed = FeedSynchronizer(
            definition, self.remote, self.cache, self.actions, self.settings,
            identity=self.identity, clock=self.clock,
            access_policy=self.access_policy, params=params,
        )
        self.feeds[definition.kind] = feed
        self.monitor.add_callback(feed.silent_refresh)

        if realtime:
            reconciler = RealtimeReconciler(
                definition.kind, self.push, clock=self.clock,
                connect_timeout=self.settings.realtime_connect_timeout,
                poll_interval=self.settings.realtime_poll_interval,
            )
            self.subscriptions[definition.kind] = reconciler.subscribe(
                feed.apply_push_event, feed.silent_refresh,
            )

        logger.debug("Feed opened", entity_kind=definition.kind, realtime=realtime)
        return feed

    async def close_feed(self, kind: str) -> None:
        """Navigate away from a feed: stop its subscription and background reads."""
        subscription = self.subscriptions.pop(kind, None)
        if subscription is not None:
            await subscription.unsubscribe()

        feed = self.feeds.pop(kind, None)
        if feed is not None:
            self.monitor.remove_callback(feed.silent_refresh)
            await feed.close()

    def on_hidden(self) -> None:
        self.monitor.on_hidden()

    def on_visible(self) -> bool:
        return self.monitor.on_visible()

    async def close(self) -> None:
        """Sign-out: tear down everything and clear this identity's cache scope."""
        if self.closed:
            return
        self.closed = True

        # Registry goes first so nothing can join a pending action across identities
        self.actions.clear()

        await self.monitor.close()
        for kind in list(self.feeds):
            await self.close_feed(kind)

        await self.cache.clear()
        logger.info("Sync session closed", identity=self.identity)

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
