"""Feed synchronizer: paginated loads, cache-first hydration, silent refresh.

State machine per feed::

    IDLE -> LOADING -> READY
    READY -> LOADING_MORE -> READY
    READY -> REFRESHING (silent, non-blocking) -> READY

Every asynchronous read records the generation it started in. A response
that arrives after a reload or after close() is discarded instead of being
applied to state nobody is looking at.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from feedsync.constants import ACTION_CREATE, ACTION_MARK_READ, TEMP_ID_PREFIX, action_key
from feedsync.core.cache import ScopedCache
from feedsync.core.clock import Clock, SystemClock
from feedsync.core.config import Settings
from feedsync.core.exceptions import MalformedCache, NotAuthenticated, RemoteUnavailable
from feedsync.core.logging import get_logger, log_remote_call
from feedsync.models.feed import (
    ChangeKind, FeedChange, FeedDefinition, FeedItem, FeedStatus, ItemPatch,
    OrderedFeedWindow, PushEvent, apply_patch, dedupe_by_id,
)
from feedsync.services.access import AllowAll, ContentAccessPolicy
from feedsync.services.action_queue import ActionQueue
from feedsync.services.mutator import LocalUpdate, OptimisticMutator, set_counter, toggle
from feedsync.services.remote import Record, RemoteDataSource

logger = get_logger(__name__)

Listener = Callable[[FeedChange], None]


class FeedSynchronizer:
    """Keeps one feed window in sync with the cache and the remote source."""

    def __init__(self, definition: FeedDefinition, remote: RemoteDataSource,
                 cache: ScopedCache, actions: ActionQueue, settings: Settings,
                 identity: str, clock: Optional[Clock] = None,
                 access_policy: Optional[ContentAccessPolicy] = None,
                 params: Optional[Dict[str, Any]] = None):
        if not identity:
            raise NotAuthenticated()

        self.definition = definition
        self.remote = remote
        self.cache = cache
        self.actions = actions
        self.settings = settings
        self.identity = identity
        self.clock = clock or SystemClock()
        self.access_policy = access_policy or AllowAll()
        self.params: Dict[str, Any] = {**definition.default_params, **(params or {})}

        self.window = OrderedFeedWindow()
        self.status = FeedStatus.IDLE
        self.refreshing = False
        self.mutator = OptimisticMutator(
            self, definition.item_schema,
            timeout=settings.mutation_timeout,
            invalidate=self.invalidate_cache,
        )

        self._generation = 0
        self._alive = True
        self._more_generation: Optional[int] = None
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []

    # ============================================================================
    # Properties
    # ============================================================================

    @property
    def kind(self) -> str:
        return self.definition.kind

    @property
    def page_size(self) -> int:
        return self.definition.page_size or self.settings.page_size

    @property
    def items(self) -> List[FeedItem]:
        return list(self.window.items)

    @property
    def has_more(self) -> bool:
        return self.window.has_more

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def state(self) -> FeedStatus:
        if self.status == FeedStatus.READY and self.refreshing:
            return FeedStatus.REFRESHING
        return self.status

    @property
    def is_loading(self) -> bool:
        return self.status in (FeedStatus.LOADING, FeedStatus.LOADING_MORE)

    # ============================================================================
    # Listeners
    # ============================================================================

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, change: FeedChange) -> None:
        if change.is_empty:
            return
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error("Feed listener failed", entity_kind=self.kind, error=str(e))

    # ============================================================================
    # Item store (used by the optimistic mutator)
    # ============================================================================

    def get_item(self, entity_id: str) -> Optional[FeedItem]:
        return self.window.get(entity_id)

    def put_item(self, item: FeedItem) -> bool:
        before = list(self.window.items)
        if not self.window.replace(item):
            return False
        self._notify(FeedChange.between(before, self.window.items))
        return True

    # ============================================================================
    # Load
    # ============================================================================

    def _is_current(self, generation: int) -> bool:
        if self._alive and generation == self._generation:
            return True
        logger.debug("Discarding late response", entity_kind=self.kind,
                     generation=generation, current=self._generation)
        return False

    async def load(self, force_refresh: bool = False) -> OrderedFeedWindow:
        """Load page 0, from cache when fresh, otherwise from the remote."""
        if not self._alive:
            return self.window

        self._generation += 1
        generation = self._generation
        self._more_generation = None
        self.status = FeedStatus.LOADING

        if not force_refresh:
            cached = await self._read_cache(valid_only=True)
            if not self._is_current(generation):
                return self.window
            if cached is not None:
                self._install(cached)
                logger.info("Feed hydrated from cache", entity_kind=self.kind,
                            items=len(cached))
                self._schedule(self._deferred_silent_refresh())
                return self.window

        try:
            rows, read_seq = await self._fetch_page(0)
        except RemoteUnavailable as e:
            if not self._is_current(generation):
                return self.window
            return await self._fall_back(e)
        except Exception:
            if self._is_current(generation):
                self.status = FeedStatus.READY if self.window.items else FeedStatus.IDLE
            raise

        if not self._is_current(generation):
            return self.window

        self._install(OrderedFeedWindow(
            items=self._to_items(rows, read_seq),
            has_more=len(rows) >= self.page_size,
            cursor=len(rows),
        ))
        await self._write_cache()
        return self.window

    async def _fall_back(self, error: RemoteUnavailable) -> OrderedFeedWindow:
        """Serve whatever usable state exists when page 0 cannot be fetched."""
        if self.window.items:
            self.window.stale = True
            self.status = FeedStatus.READY
            logger.warning("Remote unavailable, keeping current window",
                           entity_kind=self.kind, error=str(error))
            return self.window

        stale = await self._read_cache(valid_only=False)
        if stale is not None:
            stale.stale = True
            self._install(stale)
            logger.warning("Remote unavailable, serving stale cache",
                           entity_kind=self.kind, error=str(error))
            return self.window

        self.status = FeedStatus.IDLE
        logger.error("Remote unavailable and nothing cached",
                     entity_kind=self.kind, error=str(error))
        raise error

    def _install(self, window: OrderedFeedWindow) -> None:
        before = list(self.window.items)
        self.window = window
        self.status = FeedStatus.READY
        self._notify(FeedChange.between(before, window.items))

    async def load_more(self) -> OrderedFeedWindow:
        """Fetch the next page at the window cursor. Ignored while any load runs."""
        if (not self._alive or self.status != FeedStatus.READY
                or not self.window.has_more or self._more_generation is not None):
            logger.debug("load_more ignored", entity_kind=self.kind,
                         status=self.status.value, has_more=self.window.has_more)
            return self.window

        generation = self._generation
        self._more_generation = generation
        self.status = FeedStatus.LOADING_MORE
        try:
            rows, read_seq = await self._fetch_page(self.window.cursor)
        except Exception:
            if self._is_current(generation):
                self.status = FeedStatus.READY
            raise
        finally:
            if self._more_generation == generation:
                self._more_generation = None

        if not self._is_current(generation):
            return self.window

        before = list(self.window.items)
        self.window.extend_dedupe(self._to_items(rows, read_seq))
        self.window.cursor += len(rows)
        self.window.has_more = len(rows) >= self.page_size
        self.status = FeedStatus.READY
        self._notify(FeedChange.between(before, self.window.items))
        await self._write_cache()
        return self.window

    def on_near_bottom(self) -> bool:
        """Viewport reached the near-bottom threshold. Returns True if a page load was scheduled."""
        if (not self._alive or self.status != FeedStatus.READY
                or not self.window.has_more or self._more_generation is not None):
            return False
        self._schedule(self.load_more())
        return True

    async def set_params(self, params: Dict[str, Any]) -> OrderedFeedWindow:
        """Replace the feed filters and reload."""
        self.params = {**self.definition.default_params, **params}
        before = list(self.window.items)
        self.window = OrderedFeedWindow()
        self._notify(FeedChange.between(before, []))
        logger.info("Feed params changed", entity_kind=self.kind, params=self.params)
        return await self.load()

    # ============================================================================
    # Silent refresh
    # ============================================================================

    async def _deferred_silent_refresh(self) -> None:
        await self.clock.sleep(self.settings.silent_refresh_delay)
        await self.silent_refresh()

    async def silent_refresh(self) -> bool:
        """Re-fetch page 0 in the background.

        The result is discarded when it is structurally identical to the
        current window; otherwise it replaces the head of the window and the
        cache. Failures are logged and never raised. Returns True when the
        window changed.
        """
        if not self._alive or self.status != FeedStatus.READY or self.refreshing:
            return False

        generation = self._generation
        self.refreshing = True
        try:
            rows, read_seq = await self._fetch_page(0, timeout=self.settings.background_refresh_timeout)
        except Exception as e:
            logger.warning("Background refresh failed", entity_kind=self.kind, error=str(e))
            return False
        finally:
            self.refreshing = False

        if not self._is_current(generation) or self.status != FeedStatus.READY:
            return False

        fresh = self._to_items(rows, read_seq)
        fresh_ids = {item.id for item in fresh}
        current = self.window.items
        local = [i for i in current if i.id.startswith(TEMP_ID_PREFIX)]
        loaded = [i for i in current if not i.id.startswith(TEMP_ID_PREFIX)]
        loaded_ids = {i.id for i in loaded}

        # Items past the last one page 0 still covers were loaded by later pages
        covered = max((n for n, i in enumerate(loaded) if i.id in fresh_ids), default=-1)
        tail = []
        if len(rows) >= self.page_size:
            tail = [i for i in loaded[covered + 1:] if i.id not in fresh_ids]

        merged = dedupe_by_id(local + fresh + tail)
        if tail:
            added = sum(1 for i in fresh if i.id not in loaded_ids)
            dropped = sum(1 for i in loaded[:covered + 1] if i.id not in fresh_ids)
            has_more = self.window.has_more
            cursor = max(self.window.cursor + added - dropped, 0)
        else:
            has_more, cursor = len(rows) >= self.page_size, len(rows) + len(local)

        change = FeedChange.between(current, merged)
        self.window.stale = False
        if change.is_empty and has_more == self.window.has_more:
            logger.debug("Background refresh unchanged, discarded", entity_kind=self.kind)
            return False

        self.window.items = merged
        self.window.has_more = has_more
        self.window.cursor = cursor
        self._notify(change)
        await self._write_cache()
        logger.debug("Background refresh applied", entity_kind=self.kind,
                     added=len(change.added), removed=len(change.removed),
                     updated=len(change.updated))
        return True

    # ============================================================================
    # Targeted reconciliation
    # ============================================================================

    async def refresh_entity(self, entity_id: str) -> Optional[FeedItem]:
        """Re-fetch one loaded entity and replace it in place.

        Never adds an entity that is not already in the window. An entity the
        remote no longer returns is removed.
        """
        generation = self._generation
        record, read_seq = await self._fetch_one(entity_id)
        if record is False or not self._is_current(generation):
            return None

        if record is None:
            self._remove(entity_id)
            return None

        item = self._to_item(record, read_seq)
        if item is None:
            return None
        if self.definition.is_excluded(item):
            self._remove(entity_id)
            return None

        if not self.put_item(item):
            return None
        return item

    async def apply_push_event(self, event: PushEvent) -> None:
        """Reconcile one payload-free push notification."""
        logger.debug("Push event", entity_kind=self.kind, entity_id=event.entity_id,
                     change_kind=event.change_kind.value)

        if event.change_kind == ChangeKind.DELETED:
            if self._remove(event.entity_id):
                await self.invalidate_cache()
            return

        if event.change_kind == ChangeKind.UPDATED or self.window.get(event.entity_id):
            await self.refresh_entity(event.entity_id)
            return

        generation = self._generation
        record, read_seq = await self._fetch_one(event.entity_id)
        if not record or not self._is_current(generation):
            return

        item = self._to_item(record, read_seq)
        if item is None or self.definition.is_excluded(item):
            return
        if not await self.access_policy.can_view(item, self.identity):
            logger.debug("Push-created item hidden by access policy",
                         entity_kind=self.kind, entity_id=item.id)
            return
        if not self._is_current(generation):
            return

        before = list(self.window.items)
        self.window.prepend(item)
        self._notify(FeedChange.between(before, self.window.items))
        await self._write_cache()

    def _remove(self, entity_id: str) -> bool:
        before = list(self.window.items)
        if not self.window.remove(entity_id):
            return False
        self._notify(FeedChange.between(before, self.window.items))
        return True

    # ============================================================================
    # Mutations
    # ============================================================================

    async def mutate(self, entity_id: str, action: str, local_update: LocalUpdate,
                     payload: Optional[Dict[str, Any]] = None) -> Optional[FeedItem]:
        """Optimistic mutation de-duplicated by ``<action>_<entity_id>``."""
        async def remote_call() -> Record:
            return await self._remote_mutate(entity_id, action, payload)

        async def run() -> Optional[FeedItem]:
            return await self.mutator.mutate(entity_id, local_update, remote_call)

        return await self.actions.execute(action_key(action, entity_id), run)

    async def toggle(self, entity_id: str, action: str, flag: str,
                     counter: Optional[str] = None,
                     payload: Optional[Dict[str, Any]] = None) -> Optional[FeedItem]:
        """Flip a viewer flag (like, favorite, ...) with its counter."""
        return await self.mutate(entity_id, action, toggle(flag, counter), payload)

    async def mark_read(self, entity_id: str,
                        counter: str = "unread_count") -> Optional[FeedItem]:
        return await self.mutate(entity_id, ACTION_MARK_READ, set_counter(counter, 0))

    async def create(self, draft: Dict[str, Any], action: str = ACTION_CREATE,
                     payload: Optional[Dict[str, Any]] = None) -> Optional[FeedItem]:
        """Prepend a temporary item, then swap in the server's version.

        The temporary item is removed again if the remote call fails.
        """
        schema = self.definition.item_schema
        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex[:12]}"
        temp = FeedItem.from_record({**draft, schema.id_field: temp_id}, schema)

        before = list(self.window.items)
        self.window.prepend(temp)
        self._notify(FeedChange.between(before, self.window.items))

        async def run() -> Record:
            coro = self._remote_mutate(temp_id, action, payload if payload is not None else draft)
            try:
                return await asyncio.wait_for(coro, self.settings.mutation_timeout)
            except asyncio.TimeoutError as e:
                raise RemoteUnavailable("create", "timed out") from e

        try:
            result = await self.actions.execute(action_key(action, temp_id), run)
        except Exception as e:
            self._remove(temp_id)
            logger.warning("Create failed, temporary item removed",
                           entity_kind=self.kind, error=str(e))
            raise

        current = self.window.get(temp_id)
        if current is None:
            return None

        if result and schema.id_field in result:
            item = self._to_item(result)
        else:
            item = apply_patch(current, ItemPatch.from_record(result or {}, schema))
        if item is None:
            return None

        before = list(self.window.items)
        self.window.swap_id(temp_id, item)
        self._notify(FeedChange.between(before, self.window.items))
        await self.invalidate_cache()
        return item

    async def _remote_mutate(self, entity_id: str, action: str,
                             payload: Optional[Dict[str, Any]]) -> Record:
        try:
            result = await self.remote.mutate(self.kind, entity_id, action,
                                              self.identity, payload)
        except Exception as e:
            log_remote_call(logger, self.kind, action, False,
                            entity_id=entity_id, error=str(e))
            raise
        log_remote_call(logger, self.kind, action, True, entity_id=entity_id)
        return result

    # ============================================================================
    # Remote reads
    # ============================================================================

    async def _fetch_page(self, offset: int,
                          timeout: Optional[float] = None) -> Tuple[List[Record], int]:
        """Fetch one page. Also returns the read sequence for overlaying settled mutations."""
        read_seq = self.mutator.begin_read()
        coro = self.remote.fetch_page(self.kind, self.page_size, offset, dict(self.params))
        try:
            if timeout:
                rows = await asyncio.wait_for(coro, timeout)
            else:
                rows = await coro
        except asyncio.TimeoutError as e:
            log_remote_call(logger, self.kind, "fetch_page", False, offset=offset, error="timeout")
            raise RemoteUnavailable("fetch_page", f"timed out after {timeout}s") from e
        except Exception as e:
            log_remote_call(logger, self.kind, "fetch_page", False, offset=offset, error=str(e))
            raise
        finally:
            self.mutator.end_read(read_seq)

        rows = list(rows or [])
        log_remote_call(logger, self.kind, "fetch_page", True, offset=offset, rows=len(rows))
        return rows[:self.page_size], read_seq

    async def _fetch_one(self, entity_id: str) -> Tuple[Any, int]:
        """Fetch one row. The record is False (not None) when the read itself failed."""
        read_seq = self.mutator.begin_read()
        try:
            record = await asyncio.wait_for(
                self.remote.fetch_one(self.kind, entity_id),
                self.settings.background_refresh_timeout,
            )
        except Exception as e:
            log_remote_call(logger, self.kind, "fetch_one", False,
                            entity_id=entity_id, error=str(e) or type(e).__name__)
            return False, read_seq
        finally:
            self.mutator.end_read(read_seq)

        log_remote_call(logger, self.kind, "fetch_one", True,
                        entity_id=entity_id, found=record is not None)
        return record, read_seq

    def _to_item(self, record: Record, read_seq: Optional[int] = None) -> Optional[FeedItem]:
        try:
            item = FeedItem.from_record(record, self.definition.item_schema)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning("Skipping malformed remote row", entity_kind=self.kind, error=str(e))
            return None
        return self.mutator.overlay(item, read_seq)

    def _to_items(self, rows: List[Record], read_seq: Optional[int] = None) -> List[FeedItem]:
        items = []
        for row in rows:
            item = self._to_item(row, read_seq)
            if item is None or self.definition.is_excluded(item):
                continue
            items.append(item)
        return dedupe_by_id(items)

    # ============================================================================
    # Cache
    # ============================================================================

    async def _read_cache(self, valid_only: bool) -> Optional[OrderedFeedWindow]:
        if valid_only:
            value = await self.cache.get(self.kind)
        else:
            record = await self.cache.get_record(self.kind)
            value = record.value if record is not None else None

        if value is None:
            return None

        try:
            return self._decode_payload(value)
        except MalformedCache as e:
            logger.warning("Dropping malformed feed cache", entity_kind=self.kind, error=str(e))
            await self.cache.remove(self.kind)
            return None

    def _decode_payload(self, value: Any) -> Optional[OrderedFeedWindow]:
        key = self.cache.key_for(self.kind)
        if not isinstance(value, dict) or "items" not in value:
            raise MalformedCache(key, "feed payload is not an object with items")

        if value.get("params", {}) != self.params:
            logger.debug("Cached feed params differ, ignoring", entity_kind=self.kind)
            return None

        try:
            items = [self.mutator.overlay(FeedItem.model_validate(raw)) for raw in value["items"]]
            return OrderedFeedWindow(
                items=dedupe_by_id(items),
                has_more=bool(value.get("has_more", False)),
                cursor=int(value.get("cursor", len(items))),
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise MalformedCache(key, str(e)) from e

    async def _write_cache(self) -> None:
        items = [i for i in self.window.items if not i.id.startswith(TEMP_ID_PREFIX)]
        payload = {
            "items": [item.model_dump() for item in items],
            "has_more": self.window.has_more,
            "cursor": self.window.cursor,
            "params": self.params,
        }
        await self.cache.set(self.kind, payload, ttl=self.definition.ttl)

    async def invalidate_cache(self) -> None:
        await self.cache.remove(self.kind)

    # ============================================================================
    # Lifecycle
    # ============================================================================

    def _schedule(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guard(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Background feed task failed", entity_kind=self.kind, error=str(e))

    async def close(self) -> None:
        """Detach from state. Background reads stop; in-flight mutations still complete."""
        self._alive = False
        self._generation += 1
        self._listeners.clear()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Feed synchronizer closed", entity_kind=self.kind)
