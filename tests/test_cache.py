import pytest
import pytest_asyncio

from feedsync.core.cache import CacheService, ScopedCache
from feedsync.core.config import Settings
from feedsync.core.database import Database


@pytest_asyncio.fixture
async def sqlite_cache(tmp_path, clock):
    settings = Settings(
        _env_file=None,
        cache_backend="sqlite",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}",
    )
    service = CacheService(settings, database=Database(settings), clock=clock)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture(params=["memory", "sqlite"])
def any_cache(request, cache, sqlite_cache):
    return cache if request.param == "memory" else sqlite_cache


# ============================================================================
# TTL
# ============================================================================

@pytest.mark.asyncio
async def test_round_trip_then_expiry(any_cache, clock):
    await any_cache.set("k", {"items": [1, 2, 3]}, ttl=60)

    assert await any_cache.get("k") == {"items": [1, 2, 3]}

    await clock.advance(59)
    assert await any_cache.get("k") == {"items": [1, 2, 3]}

    await clock.advance(1)
    assert await any_cache.get("k") is None


@pytest.mark.asyncio
async def test_expired_entry_is_kept_for_stale_reads(any_cache, clock):
    await any_cache.set("k", "v", ttl=10)
    await clock.advance(30)

    assert await any_cache.get("k") is None
    record = await any_cache.get_record("k")
    assert record is not None
    assert record.value == "v"
    assert not record.is_valid(clock.now())


@pytest.mark.asyncio
async def test_overwrite_resets_stored_at(any_cache, clock):
    await any_cache.set("k", 1, ttl=10)
    await clock.advance(8)
    await any_cache.set("k", 2, ttl=10)
    await clock.advance(8)

    assert await any_cache.get("k") == 2


@pytest.mark.asyncio
async def test_delete(any_cache):
    await any_cache.set("k", 1)

    assert await any_cache.delete("k") is True
    assert await any_cache.get("k") is None
    assert await any_cache.delete("k") is False


@pytest.mark.asyncio
async def test_default_ttl_from_settings(any_cache, clock):
    await any_cache.set("k", 1)

    await clock.advance(any_cache.settings.cache_ttl - 1)
    assert await any_cache.get("k") == 1
    await clock.advance(1)
    assert await any_cache.get("k") is None


# ============================================================================
# Malformed entries
# ============================================================================

@pytest.mark.asyncio
async def test_malformed_memory_entry_reads_absent_and_self_heals(cache):
    cache.memory_cache["bad"] = "{not json"

    assert await cache.get("bad") is None
    assert "bad" not in cache.memory_cache


@pytest.mark.asyncio
async def test_memory_entry_missing_timestamps_is_malformed(cache):
    cache.memory_cache["bad"] = '{"value": 1}'

    assert await cache.get_record("bad") is None
    assert "bad" not in cache.memory_cache


@pytest.mark.asyncio
async def test_malformed_sqlite_row_reads_absent_and_self_heals(sqlite_cache, clock):
    await sqlite_cache.database.set_cache_entry("bad", "{not json", clock.now(), 60)

    assert await sqlite_cache.get("bad") is None
    assert await sqlite_cache.database.get_cache_entry("bad") is None


# ============================================================================
# Durability and store outages
# ============================================================================

@pytest.mark.asyncio
async def test_sqlite_entries_survive_restart(tmp_path, clock):
    settings = Settings(
        _env_file=None,
        cache_backend="sqlite",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'durable.db'}",
    )

    first = CacheService(settings, database=Database(settings), clock=clock)
    await first.startup()
    await first.set("k", {"a": 1}, ttl=60)
    await first.shutdown()

    second = CacheService(settings, database=Database(settings), clock=clock)
    await second.startup()
    try:
        assert await second.get("k") == {"a": 1}
    finally:
        await second.shutdown()


@pytest.mark.asyncio
async def test_store_failure_degrades_to_absent(sqlite_cache):
    async def broken(*args, **kwargs):
        raise RuntimeError("disk gone")

    sqlite_cache.database.get_cache_entry = broken
    sqlite_cache.database.set_cache_entry = broken

    assert await sqlite_cache.set("k", 1) is False
    assert await sqlite_cache.get("k") is None


@pytest.mark.asyncio
async def test_uninitialized_database_degrades_to_absent(settings, clock):
    service = CacheService(settings.model_copy(update={"cache_backend": "sqlite"}),
                           database=Database(settings), clock=clock)

    assert await service.get("k") is None
    assert await service.set("k", 1) is False


# ============================================================================
# Identity scope
# ============================================================================

@pytest.mark.asyncio
async def test_scoped_keys_encode_kind_and_identity(cache):
    scope = ScopedCache(cache, "user-1")

    assert scope.key_for("posts") == "app_cache:user-1:posts_user-1"


@pytest.mark.asyncio
async def test_identities_do_not_share_entries(any_cache):
    alice = ScopedCache(any_cache, "alice")
    bob = ScopedCache(any_cache, "bob")

    await alice.set("posts", ["alice's"])

    assert await bob.get("posts") is None
    assert await alice.get("posts") == ["alice's"]


@pytest.mark.asyncio
async def test_clear_removes_only_own_scope(any_cache):
    alice = ScopedCache(any_cache, "alice")
    bob = ScopedCache(any_cache, "bob")
    await alice.set("posts", 1)
    await alice.set("members", 2)
    await bob.set("posts", 3)

    removed = await alice.clear()

    assert removed == 2
    assert await alice.get("posts") is None
    assert await alice.get("members") is None
    assert await bob.get("posts") == 3


@pytest.mark.asyncio
async def test_clear_treats_wildcards_literally(any_cache):
    odd = ScopedCache(any_cache, "a%")
    other = ScopedCache(any_cache, "abc")
    await odd.set("posts", 1)
    await other.set("posts", 2)

    await odd.clear()

    assert await other.get("posts") == 2


def test_identity_with_separator_is_rejected(cache):
    # "alice:x" would fall under alice's "app_cache:alice:" prefix on sign-out
    with pytest.raises(ValueError):
        ScopedCache(cache, "alice:x")
