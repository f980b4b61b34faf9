import asyncio
import heapq
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from feedsync.core.cache import CacheService, ScopedCache
from feedsync.core.config import Settings
from feedsync.core.exceptions import RemoteUnavailable
from feedsync.models.feed import ChangeKind, ChannelStatus, PushEvent


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run until the loop is quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Deterministic clock: time only moves on advance()."""

    def __init__(self, start: float = 1_000_000.0):
        self._now = start
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + max(seconds, 0.0), next(self._seq), future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
            await settle()
        self._now = target
        await settle()


class FakeRemote:
    """In-memory remote data source that records every call."""

    id_fields = {"conversations": "conversation_id"}

    def __init__(self):
        self.rows: Dict[str, List[Dict[str, Any]]] = {}
        self.page_calls: List[Tuple[str, int, int, Optional[Dict[str, Any]]]] = []
        self.one_calls: List[Tuple[str, str]] = []
        self.mutate_calls: List[Tuple[str, str, str, str, Optional[Dict[str, Any]]]] = []
        self.fail_reads = False
        self.mutation_error: Optional[Exception] = None
        self.page_gate: Optional[asyncio.Event] = None
        self.mutate_gate: Optional[asyncio.Event] = None
        self.handlers: Dict[str, Callable[[str, str, Optional[Dict[str, Any]]], Dict[str, Any]]] = {}

    def seed(self, kind: str, rows: List[Dict[str, Any]]) -> None:
        self.rows[kind] = [dict(row) for row in rows]

    def _id_field(self, kind: str) -> str:
        return self.id_fields.get(kind, "id")

    async def fetch_page(self, kind, limit, offset, params=None):
        self.page_calls.append((kind, limit, offset, params))
        if self.page_gate is not None:
            await self.page_gate.wait()
        if self.fail_reads:
            raise RemoteUnavailable("fetch_page", "offline")
        return [dict(row) for row in self.rows.get(kind, [])[offset:offset + limit]]

    async def fetch_one(self, kind, entity_id):
        self.one_calls.append((kind, entity_id))
        if self.fail_reads:
            raise RemoteUnavailable("fetch_one", "offline")
        field = self._id_field(kind)
        for row in self.rows.get(kind, []):
            if str(row[field]) == entity_id:
                return dict(row)
        return None

    async def mutate(self, kind, entity_id, action, actor_id, payload=None):
        self.mutate_calls.append((kind, entity_id, action, actor_id, payload))
        if self.mutate_gate is not None:
            await self.mutate_gate.wait()
        if self.mutation_error is not None:
            raise self.mutation_error
        handler = self.handlers.get(action)
        return handler(kind, entity_id, payload) if handler else {}


class FakePush:
    """Push source whose channel is driven by the test."""

    def __init__(self):
        self.channels: Dict[str, Tuple[Callable, Callable]] = {}
        self.unsubscribed: List[str] = []

    def subscribe(self, kind, on_event, on_status):
        self.channels[kind] = (on_event, on_status)

        async def unsubscribe():
            self.unsubscribed.append(kind)
            self.channels.pop(kind, None)

        return unsubscribe

    def connect(self, kind: str) -> None:
        self.channels[kind][1](ChannelStatus.CONNECTED)

    def emit(self, kind: str, entity_id: str, change_kind: ChangeKind = ChangeKind.UPDATED) -> None:
        self.channels[kind][0](PushEvent(entity_id=entity_id, change_kind=change_kind))


def post_row(i: int, **overrides) -> Dict[str, Any]:
    row = {
        "id": str(i),
        "author_id": f"author-{i}",
        "content": f"post {i}",
        "likes_count": 0,
        "comments_count": 0,
        "shares_count": 0,
        "has_liked": False,
        "has_shared": False,
        "created_at": f"2024-01-01T00:00:{i % 60:02d}",
    }
    row.update(overrides)
    return row


@pytest.fixture
def make_posts():
    def make(count: int, start: int = 1, **overrides) -> List[Dict[str, Any]]:
        return [post_row(i, **overrides) for i in range(start, start + count)]
    return make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        cache_backend="memory",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'feedsync.db'}",
        log_format="console",
    )


@pytest_asyncio.fixture
async def cache(settings, clock):
    service = CacheService(settings, database=None, clock=clock)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
def scoped_cache(cache):
    return ScopedCache(cache, "user-1")


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def push():
    return FakePush()
