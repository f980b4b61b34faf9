"""Optimistic mutation with snapshot rollback.

A mutation applies its local patch immediately, awaits the remote call, then
either reconciles with the server's authoritative counters/flags or restores
the pre-mutation snapshot. Items are immutable, so a rollback is a plain
assignment of the snapshot.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from feedsync.core.exceptions import Conflict, RemoteUnavailable
from feedsync.core.logging import get_logger
from feedsync.models.feed import (
    FeedItem, ItemPatch, ItemSchema, apply_patch, revert_fields,
)

logger = get_logger(__name__)

LocalUpdate = Callable[[FeedItem], ItemPatch]
RemoteCall = Callable[[], Awaitable[Optional[Dict[str, Any]]]]


class ItemStore(Protocol):
    """Where the mutator reads and writes the entity it is mutating."""

    def get_item(self, entity_id: str) -> Optional[FeedItem]:
        ...

    def put_item(self, item: FeedItem) -> bool:
        ...


@dataclass
class _PendingMutation:
    entity_id: str
    snapshot: FeedItem
    patch: ItemPatch
    optimistic: FeedItem
    # Latest server read seen while in flight; preferred over snapshot on rollback
    base: Optional[FeedItem] = None

    @property
    def restore_point(self) -> FeedItem:
        return self.base if self.base is not None else self.snapshot


@dataclass
class _SettledMutation:
    seq: int
    # Authoritative values of every field the mutation touched
    patch: ItemPatch


class OptimisticMutator:
    """Applies optimistic patches to one feed's items."""

    def __init__(self, store: ItemStore, schema: ItemSchema,
                 timeout: Optional[float] = None,
                 invalidate: Optional[Callable[[], Awaitable[Any]]] = None):
        self.store = store
        self.schema = schema
        self.timeout = timeout
        self.invalidate = invalidate
        self._inflight: Dict[str, List[_PendingMutation]] = {}
        self._settled: Dict[str, List[_SettledMutation]] = {}
        self._active_reads: Set[int] = set()
        self._seq = 0

    def has_pending(self, entity_id: str) -> bool:
        return bool(self._inflight.get(entity_id))

    # ============================================================================
    # Read tracking
    # ============================================================================

    def begin_read(self) -> int:
        """Mark the start of a remote read. Pass the result to ``overlay``."""
        self._prune_settled()
        self._seq += 1
        self._active_reads.add(self._seq)
        return self._seq

    def end_read(self, read_seq: int) -> None:
        self._active_reads.discard(read_seq)

    def _prune_settled(self) -> None:
        # Reads that are no longer running have already been overlaid
        oldest = min(self._active_reads, default=None)
        for entity_id in list(self._settled):
            kept = [s for s in self._settled[entity_id]
                    if oldest is not None and s.seq > oldest]
            if kept:
                self._settled[entity_id] = kept
            else:
                del self._settled[entity_id]

    # ============================================================================
    # Mutations
    # ============================================================================

    async def mutate(self, entity_id: str, local_update: LocalUpdate,
                     remote_call: RemoteCall) -> Optional[FeedItem]:
        """Run one optimistic mutation.

        Returns the reconciled item, or None when the entity is not (or no
        longer) loaded locally or the remote reports a conflict. Other remote
        failures are re-raised after rollback.
        """
        current = self.store.get_item(entity_id)
        if current is None:
            logger.info("Mutation skipped, entity not loaded", entity_id=entity_id)
            return None

        snapshot = current.model_copy(deep=True)
        patch = local_update(current)
        optimistic = apply_patch(current, patch)
        self.store.put_item(optimistic)

        pending = _PendingMutation(entity_id, snapshot, patch, optimistic)
        self._inflight.setdefault(entity_id, []).append(pending)

        try:
            try:
                if self.timeout:
                    result = await asyncio.wait_for(remote_call(), self.timeout)
                else:
                    result = await remote_call()
            except asyncio.TimeoutError as e:
                raise RemoteUnavailable("mutate", f"timed out after {self.timeout}s") from e
        except Conflict as e:
            self._rollback(pending)
            logger.info("Mutation conflicted, rolled back",
                        entity_id=entity_id, error=str(e))
            return None
        except Exception as e:
            self._rollback(pending)
            logger.warning("Mutation failed, rolled back",
                           entity_id=entity_id, error=str(e))
            raise
        finally:
            self._forget(pending)

        return await self._reconcile(pending, result)

    async def _reconcile(self, pending: _PendingMutation,
                         result: Optional[Dict[str, Any]]) -> Optional[FeedItem]:
        entity_id = pending.entity_id
        current = self.store.get_item(entity_id)
        if current is None:
            logger.info("Mutation settled after entity left the window",
                        entity_id=entity_id)
            return None

        server_patch = ItemPatch.from_record(result or {}, self.schema)
        reconciled = apply_patch(current, server_patch)
        self.store.put_item(reconciled)

        # Reads already running may still return the pre-mutation state
        if self._active_reads:
            self._seq += 1
            touched = pending.patch.fields() | server_patch.fields()
            self._settled.setdefault(entity_id, []).append(
                _SettledMutation(self._seq, _pick_fields(reconciled, touched))
            )

        if self.invalidate is not None:
            await self.invalidate()

        logger.debug("Mutation reconciled", entity_id=entity_id,
                     counters=reconciled.counters, flags=reconciled.flags)
        return reconciled

    def _rollback(self, pending: _PendingMutation) -> None:
        current = self.store.get_item(pending.entity_id)
        if current is None:
            # Never resurrect a removed entity
            return

        if current == pending.optimistic:
            self.store.put_item(pending.restore_point)
        else:
            self.store.put_item(
                revert_fields(current, pending.restore_point, pending.patch.fields())
            )

    def _forget(self, pending: _PendingMutation) -> None:
        queue = self._inflight.get(pending.entity_id)
        if not queue:
            return
        if pending in queue:
            queue.remove(pending)
        if not queue:
            del self._inflight[pending.entity_id]

    def overlay(self, item: FeedItem, read_seq: Optional[int] = None) -> FeedItem:
        """Re-apply mutation results on top of a fresh server read.

        A read that started before a mutation settled may carry the
        pre-mutation state, so the settled values of the touched fields win
        over it. Patches still in flight are re-applied on top. Only fields
        touched by a mutation are affected.
        """
        result = item
        if read_seq is not None:
            for settled in self._settled.get(item.id, ()):
                if settled.seq > read_seq:
                    result = apply_patch(result, settled.patch)

        for pending in self._inflight.get(item.id, ()):
            pending.base = result
            result = apply_patch(result, pending.patch)
            pending.optimistic = result
        return result


def _pick_fields(item: FeedItem, fields: Iterable[Tuple[str, str]]) -> ItemPatch:
    groups: Dict[str, Dict[str, Any]] = {"counters": {}, "flags": {}, "content": {}}
    for group, name in fields:
        source = getattr(item, group)
        if name in source:
            groups[group][name] = source[name]
    return ItemPatch(**groups)


# ============================================================================
# Local update builders
# ============================================================================

def toggle(flag: str, counter: Optional[str] = None) -> LocalUpdate:
    """Flip `flag`; move `counter` by one in the same direction, floored at 0."""
    def update(item: FeedItem) -> ItemPatch:
        on = not item.flags.get(flag, False)
        counters = {}
        if counter:
            value = item.counters.get(counter, 0) + (1 if on else -1)
            counters[counter] = max(value, 0)
        return ItemPatch(flags={flag: on}, counters=counters)
    return update


def increment(counter: str, by: int = 1, flag: Optional[str] = None) -> LocalUpdate:
    """Add `by` to `counter` and optionally set `flag` true."""
    def update(item: FeedItem) -> ItemPatch:
        flags = {flag: True} if flag else {}
        value = max(item.counters.get(counter, 0) + by, 0)
        return ItemPatch(counters={counter: value}, flags=flags)
    return update


def set_counter(counter: str, value: int) -> LocalUpdate:
    def update(item: FeedItem) -> ItemPatch:
        return ItemPatch(counters={counter: value})
    return update
