"""TTL cache service with SQLite (default), Redis, or in-memory backend.

Every backend stores the same JSON record ``{"value", "stored_at", "ttl"}``.
Expiry is lazy: ``get`` treats an expired record as absent but leaves it in
place so ``get_record`` can still serve it as a stale fallback.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

import redis.asyncio as redis

from feedsync.core.clock import Clock, SystemClock
from feedsync.core.config import Settings
from feedsync.core.exceptions import MalformedCache
from feedsync.core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from feedsync.core.database import Database

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheRecord:
    """A decoded cache record."""

    value: Any
    stored_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


def encode_record(value: Any, stored_at: float, ttl: float) -> str:
    return json.dumps({"value": value, "stored_at": stored_at, "ttl": ttl}, default=str)


def decode_record(key: str, raw: str) -> CacheRecord:
    """Parse a persisted record, raising MalformedCache on any shape problem."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedCache(key, str(e)) from e

    if not isinstance(data, dict) or "value" not in data:
        raise MalformedCache(key, "record is not an object with a value")

    try:
        return CacheRecord(
            value=data["value"],
            stored_at=float(data["stored_at"]),
            ttl=float(data["ttl"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedCache(key, f"bad timestamp fields: {e}") from e


class CacheService:
    """Async cache service over a durable key-value store.

    Backend selection (``settings.cache_backend``):
    - sqlite: rows in the ``cache_entries`` table (default)
    - redis: plain string keys, no server-side expiry
    - memory: process-local dict, used when no store is configured

    Any backend failure is logged and degrades to "absent" / False; callers
    never see store exceptions.
    """

    def __init__(self, settings: Settings, database: Optional["Database"] = None,
                 clock: Optional[Clock] = None):
        self.settings = settings
        self.database = database
        self.clock = clock or SystemClock()
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, str] = {}
        self.use_redis = settings.cache_backend == "redis" and bool(settings.redis_url)
        self.use_sqlite = settings.cache_backend == "sqlite" and database is not None

    @property
    def backend(self) -> str:
        if self.use_redis and self.redis:
            return "redis"
        if self.use_sqlite and self.database:
            return "sqlite"
        return "memory"

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except Exception as e:
                logger.warning("Redis connection failed, falling back", error=str(e))
                self.use_redis = False
                self.redis = None
                if self.database:
                    self.use_sqlite = True

        if self.use_sqlite and self.database and not self.database.is_ready:
            try:
                await self.database.startup()
            except Exception as e:
                logger.warning("SQLite store unavailable, using in-memory cache", error=str(e))
                self.use_sqlite = False

        logger.info("Cache service started", backend=self.backend)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.close()
            self.redis = None
            logger.info("Redis cache connections closed")

        if self.database:
            await self.database.shutdown()

        self.memory_cache.clear()

    # ============================================================================
    # Raw backend access
    # ============================================================================

    async def _read_raw(self, key: str) -> Optional[str]:
        if self.use_redis and self.redis:
            return await self.redis.get(key)
        if self.use_sqlite and self.database:
            row = await self.database.get_cache_entry(key)
            if row is None:
                return None
            value, stored_at, ttl = row
            # Rebuild the record envelope from the table columns
            try:
                return encode_record(json.loads(value), stored_at, ttl)
            except (TypeError, ValueError):
                return value
        return self.memory_cache.get(key)

    async def _write_raw(self, key: str, value: Any, stored_at: float, ttl: float) -> None:
        if self.use_redis and self.redis:
            await self.redis.set(key, encode_record(value, stored_at, ttl))
        elif self.use_sqlite and self.database:
            await self.database.set_cache_entry(key, json.dumps(value, default=str), stored_at, ttl)
        else:
            self.memory_cache[key] = encode_record(value, stored_at, ttl)

    async def _delete_raw(self, key: str) -> bool:
        if self.use_redis and self.redis:
            return bool(await self.redis.delete(key))
        if self.use_sqlite and self.database:
            return await self.database.delete_cache_entry(key)
        return self.memory_cache.pop(key, None) is not None

    # ============================================================================
    # Public API
    # ============================================================================

    async def get_record(self, key: str) -> Optional[CacheRecord]:
        """Get the record for `key` whether or not it has expired.

        A malformed record is removed and reported as absent.
        """
        try:
            raw = await self._read_raw(key)
        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

        if raw is None:
            return None

        try:
            return decode_record(key, raw)
        except MalformedCache as e:
            logger.warning("Dropping malformed cache entry", key=key, error=str(e))
            await self.delete(key)
            return None

    async def get(self, key: str) -> Optional[Any]:
        """Get the value for `key`, or None when absent or expired."""
        record = await self.get_record(key)
        if record is None:
            log_cache_operation(logger, "get", key, hit=False)
            return None

        if not record.is_valid(self.clock.now()):
            log_cache_operation(logger, "get", key, hit=False, expired=True)
            return None

        log_cache_operation(logger, "get", key, hit=True)
        return record.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store `value` under `key` for `ttl` seconds (settings default)."""
        ttl = ttl or self.settings.cache_ttl
        try:
            await self._write_raw(key, value, self.clock.now(), ttl)
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True
        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            deleted = await self._delete_raw(key)
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted
        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def clear_prefix(self, prefix: str) -> int:
        """Delete every key starting with `prefix`. Returns the count removed."""
        try:
            if self.use_redis and self.redis:
                pattern = _escape_glob(prefix) + "*"
                keys = [key async for key in self.redis.scan_iter(match=pattern)]
                count = await self.redis.delete(*keys) if keys else 0
            elif self.use_sqlite and self.database:
                count = await self.database.delete_cache_prefix(prefix)
            else:
                keys = [key for key in self.memory_cache if key.startswith(prefix)]
                for key in keys:
                    del self.memory_cache[key]
                count = len(keys)

            log_cache_operation(logger, "clear_prefix", prefix, deleted=count)
            return count
        except Exception as e:
            logger.error("Cache clear failed", prefix=prefix, error=str(e))
            return 0


def _escape_glob(text: str) -> str:
    out = []
    for ch in text:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)


class ScopedCache:
    """Identity-scoped view over CacheService.

    Keys are laid out as ``<namespace>:<identity>:<kind>_<identity>`` so that
    switching identity can never read another identity's entries, and sign-out
    can remove every entry of the identity with one prefix delete.
    """

    def __init__(self, cache: CacheService, identity: str, namespace: Optional[str] = None):
        # ":" separates key segments; an identity containing it would share a prefix with another
        if ":" in identity:
            raise ValueError(f"Cache identity must not contain ':': {identity!r}")
        self.cache = cache
        self.identity = identity
        self.namespace = namespace or cache.settings.cache_namespace

    @property
    def prefix(self) -> str:
        return f"{self.namespace}:{self.identity}:"

    def key_for(self, kind: str) -> str:
        return f"{self.prefix}{kind}_{self.identity}"

    async def get(self, kind: str) -> Optional[Any]:
        return await self.cache.get(self.key_for(kind))

    async def get_record(self, kind: str) -> Optional[CacheRecord]:
        return await self.cache.get_record(self.key_for(kind))

    async def set(self, kind: str, value: Any, ttl: Optional[float] = None) -> bool:
        return await self.cache.set(self.key_for(kind), value, ttl)

    async def remove(self, kind: str) -> bool:
        return await self.cache.delete(self.key_for(kind))

    async def clear(self) -> int:
        """Remove every entry owned by this identity."""
        count = await self.cache.clear_prefix(self.prefix)
        logger.info("Cleared identity cache scope", identity=self.identity, removed=count)
        return count
