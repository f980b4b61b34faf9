"""Domain models for synchronized feeds.

FeedItem generalizes posts, conversations, members and listings: an id, named
integer counters, named boolean viewer-relation flags, and opaque content.
Items are immutable; every change produces a new item so a snapshot taken
before an optimistic update can be restored by plain assignment.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Schema
# ============================================================================

class ItemSchema(BaseModel):
    """How raw remote rows map onto FeedItem fields."""

    model_config = ConfigDict(frozen=True)

    id_field: str = "id"
    counters: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()
    created_field: str = "created_at"


class FeedDefinition(BaseModel):
    """Static description of one synchronized collection."""

    model_config = ConfigDict(frozen=True)

    kind: str
    # None falls back to the configured default page size
    page_size: Optional[int] = Field(default=None, ge=1)
    ttl: float = Field(default=300.0, gt=0)
    item_schema: ItemSchema = Field(default_factory=ItemSchema)
    default_params: Dict[str, Any] = Field(default_factory=dict)
    # field -> value pairs filtered out client side
    exclude: Dict[str, Any] = Field(default_factory=dict)

    def is_excluded(self, item: "FeedItem") -> bool:
        for name, value in self.exclude.items():
            if item.content.get(name) == value:
                return True
        return False


# ============================================================================
# Items and patches
# ============================================================================

class FeedItem(BaseModel):
    """One entity in a feed window."""

    model_config = ConfigDict(frozen=True)

    id: str
    counters: Dict[str, int] = Field(default_factory=dict)
    flags: Dict[str, bool] = Field(default_factory=dict)
    content: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any], schema: ItemSchema) -> "FeedItem":
        """Build an item from a raw remote row."""
        known = {schema.id_field, schema.created_field, *schema.counters, *schema.flags}
        created = record.get(schema.created_field)
        return cls(
            id=str(record[schema.id_field]),
            counters={name: int(record.get(name) or 0) for name in schema.counters},
            flags={name: bool(record.get(name)) for name in schema.flags},
            content={k: v for k, v in record.items() if k not in known},
            created_at=str(created) if created is not None else None,
        )


class ItemPatch(BaseModel):
    """A partial update to a FeedItem."""

    model_config = ConfigDict(frozen=True)

    counters: Dict[str, int] = Field(default_factory=dict)
    flags: Dict[str, bool] = Field(default_factory=dict)
    content: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any], schema: ItemSchema) -> "ItemPatch":
        """Authoritative counters and flags from a mutation response.

        Fields the response does not mention are left out of the patch.
        """
        return cls(
            counters={n: int(record[n] or 0) for n in schema.counters if n in record},
            flags={n: bool(record[n]) for n in schema.flags if n in record},
        )

    def fields(self) -> FrozenSet[Tuple[str, str]]:
        return frozenset(
            [("counters", n) for n in self.counters]
            + [("flags", n) for n in self.flags]
            + [("content", n) for n in self.content]
        )

    @property
    def is_empty(self) -> bool:
        return not (self.counters or self.flags or self.content)


def apply_patch(item: FeedItem, patch: ItemPatch) -> FeedItem:
    """Return a new item with `patch` applied. `item` is not modified."""
    return item.model_copy(update={
        "counters": {**item.counters, **patch.counters},
        "flags": {**item.flags, **patch.flags},
        "content": {**item.content, **patch.content},
    })


def revert_fields(current: FeedItem, snapshot: FeedItem,
                  fields: Iterable[Tuple[str, str]]) -> FeedItem:
    """Restore only `fields` of `current` to their values in `snapshot`."""
    groups = {
        "counters": dict(current.counters),
        "flags": dict(current.flags),
        "content": dict(current.content),
    }
    for group, name in fields:
        source = getattr(snapshot, group)
        if name in source:
            groups[group][name] = source[name]
        else:
            groups[group].pop(name, None)
    return current.model_copy(update=groups)


def dedupe_by_id(items: Iterable[FeedItem]) -> List[FeedItem]:
    """Drop later duplicates, keeping first-seen order."""
    seen = set()
    out = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        out.append(item)
    return out


# ============================================================================
# Window
# ============================================================================

@dataclass
class OrderedFeedWindow:
    """Ordered, duplicate-free slice of a feed plus pagination state.

    ``cursor`` counts remote rows consumed so far and is the offset for the
    next page. It can exceed ``len(items)`` when rows were filtered out
    client side.
    """

    items: List[FeedItem] = field(default_factory=list)
    has_more: bool = False
    cursor: int = 0
    stale: bool = False

    def __len__(self) -> int:
        return len(self.items)

    def ids(self) -> List[str]:
        return [item.id for item in self.items]

    def index_of(self, entity_id: str) -> int:
        for i, item in enumerate(self.items):
            if item.id == entity_id:
                return i
        return -1

    def get(self, entity_id: str) -> Optional[FeedItem]:
        index = self.index_of(entity_id)
        return self.items[index] if index >= 0 else None

    def replace(self, item: FeedItem) -> bool:
        """Swap in a new version of an existing item. False when absent."""
        index = self.index_of(item.id)
        if index < 0:
            return False
        self.items[index] = item
        return True

    def prepend(self, item: FeedItem) -> bool:
        """Insert at the head. An existing id is replaced in place instead."""
        if self.replace(item):
            return False
        self.items.insert(0, item)
        self.cursor += 1
        return True

    def extend_dedupe(self, items: Iterable[FeedItem]) -> int:
        """Append new items; overlapping ids keep their position but take the new value."""
        positions = {item.id: i for i, item in enumerate(self.items)}
        appended = 0
        for item in items:
            if item.id in positions:
                self.items[positions[item.id]] = item
                continue
            positions[item.id] = len(self.items)
            self.items.append(item)
            appended += 1
        return appended

    def remove(self, entity_id: str) -> bool:
        index = self.index_of(entity_id)
        if index < 0:
            return False
        del self.items[index]
        self.cursor = max(self.cursor - 1, 0)
        return True

    def swap_id(self, old_id: str, item: FeedItem) -> bool:
        """Replace the item `old_id` with `item` (which may carry a new id)."""
        index = self.index_of(old_id)
        if index < 0:
            return False
        existing = self.index_of(item.id)
        if existing >= 0 and existing != index:
            del self.items[index]
            self.items[self.index_of(item.id)] = item
        else:
            self.items[index] = item
        return True


# ============================================================================
# Status, events and diffs
# ============================================================================

class FeedStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOADING_MORE = "loading_more"
    REFRESHING = "refreshing"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChannelStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class PushEvent:
    """Payload-free change notification from the push channel."""

    entity_id: str
    change_kind: ChangeKind = ChangeKind.UPDATED


@dataclass
class FeedChange:
    """Structural id-keyed difference between two item sequences."""

    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    reordered: bool = False
    before: Dict[str, FeedItem] = field(default_factory=dict)
    after: Dict[str, FeedItem] = field(default_factory=dict)

    @classmethod
    def between(cls, before: List[FeedItem], after: List[FeedItem]) -> "FeedChange":
        old = {item.id: item for item in before}
        new = {item.id: item for item in after}

        added = [item.id for item in after if item.id not in old]
        removed = [item.id for item in before if item.id not in new]
        updated = [item.id for item in after if item.id in old and old[item.id] != item]

        common_old = [item.id for item in before if item.id in new]
        common_new = [item.id for item in after if item.id in old]

        return cls(
            added=added,
            removed=removed,
            updated=updated,
            reordered=common_old != common_new,
            before=old,
            after=new,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated or self.reordered)

    def counter_delta(self, name: str) -> int:
        """Change in the sum of counter `name` across the sequence."""
        total_before = sum(item.counters.get(name, 0) for item in self.before.values())
        total_after = sum(item.counters.get(name, 0) for item in self.after.values())
        return total_after - total_before
