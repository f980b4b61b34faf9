"""Realtime reconciler: push-driven targeted refresh with poll fallback.

A subscription opens the push channel and starts a connect timer. If the
channel confirms before the timer fires, every push event triggers a targeted
re-fetch of the affected entity. Otherwise the subscription falls back to a
fixed-interval silent refresh for the rest of its lifetime.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from feedsync.core.clock import Clock, SystemClock
from feedsync.core.logging import get_logger
from feedsync.models.feed import ChannelStatus, PushEvent
from feedsync.services.remote import PushSource, Unsubscribe

logger = get_logger(__name__)

EntityChangeHandler = Callable[[PushEvent], Awaitable[None]]
PollHandler = Callable[[], Awaitable[object]]


class RealtimeSubscription:
    """One live push subscription and its timers."""

    def __init__(self, kind: str, push: PushSource, clock: Clock,
                 connect_timeout: float, poll_interval: float,
                 on_entity_change: EntityChangeHandler, on_poll: PollHandler):
        self.kind = kind
        self.clock = clock
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self.on_entity_change = on_entity_change
        self.on_poll = on_poll

        self.connected = False
        self.polling = False
        self.closed = False
        self._timer: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self._channel_unsubscribe: Optional[Unsubscribe] = None

        self._timer = asyncio.ensure_future(self._connect_timer())
        try:
            self._channel_unsubscribe = push.subscribe(kind, self._on_event, self._on_status)
        except Exception as e:
            logger.warning("Push subscribe failed, waiting for poll fallback",
                           entity_kind=kind, error=str(e))

    # ============================================================================
    # Channel callbacks
    # ============================================================================

    def _on_status(self, status: ChannelStatus) -> None:
        if self.closed:
            return

        if status == ChannelStatus.CONNECTED:
            self._mark_connected()
        elif status in (ChannelStatus.ERROR, ChannelStatus.CLOSED):
            logger.warning("Push channel status", entity_kind=self.kind, status=status.value)
            if self.connected and not self.polling:
                self.connected = False
                self._start_polling()

    def _on_event(self, event: PushEvent) -> None:
        if self.closed:
            return

        # Receiving an event proves the channel is live
        if not self.connected and not self.polling:
            self._mark_connected()

        task = asyncio.ensure_future(self._handle_event(event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    def _mark_connected(self) -> None:
        self.connected = True
        if self._timer and not self._timer.done():
            self._timer.cancel()
        logger.info("Push channel connected", entity_kind=self.kind)

    async def _handle_event(self, event: PushEvent) -> None:
        try:
            await self.on_entity_change(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Push event handling failed", entity_kind=self.kind,
                         entity_id=event.entity_id, error=str(e))

    # ============================================================================
    # Timers
    # ============================================================================

    async def _connect_timer(self) -> None:
        await self.clock.sleep(self.connect_timeout)
        if self.connected or self.closed:
            return
        logger.warning("Push channel not connected, falling back to polling",
                       entity_kind=self.kind, connect_timeout=self.connect_timeout,
                       poll_interval=self.poll_interval)
        self._start_polling()

    def _start_polling(self) -> None:
        if self.polling or self.closed:
            return
        self.polling = True
        self._poll_task = asyncio.ensure_future(self._poll_loop())

    async def _poll_loop(self) -> None:
        """Poll loop - first poll one full interval after fallback."""
        while not self.closed:
            await self.clock.sleep(self.poll_interval)
            if self.closed:
                break
            try:
                await self.on_poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Poll iteration failed", entity_kind=self.kind, error=str(e))

    # ============================================================================
    # Teardown
    # ============================================================================

    async def unsubscribe(self) -> None:
        """Tear down the push channel and every timer."""
        if self.closed:
            return
        self.closed = True

        tasks = [t for t in (self._timer, self._poll_task) if t is not None]
        tasks.extend(self._event_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._channel_unsubscribe is not None:
            try:
                await self._channel_unsubscribe()
            except Exception as e:
                logger.warning("Push channel teardown failed", entity_kind=self.kind, error=str(e))
            self._channel_unsubscribe = None

        logger.debug("Realtime subscription closed", entity_kind=self.kind)


class RealtimeReconciler:
    """Creates realtime subscriptions for one entity kind."""

    def __init__(self, kind: str, push: PushSource, clock: Optional[Clock] = None,
                 connect_timeout: float = 3.0, poll_interval: float = 15.0):
        self.kind = kind
        self.push = push
        self.clock = clock or SystemClock()
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval

    def subscribe(self, on_entity_change: EntityChangeHandler,
                  on_poll: PollHandler) -> RealtimeSubscription:
        """Open a subscription. Call ``unsubscribe()`` on the result to stop it."""
        return RealtimeSubscription(
            self.kind, self.push, self.clock,
            self.connect_timeout, self.poll_interval,
            on_entity_change, on_poll,
        )
