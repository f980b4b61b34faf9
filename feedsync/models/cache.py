"""SQLite-backed cache model for durable key-value storage with TTL.

Expiry is lazy: a row past its TTL stays on disk and is treated as absent by
readers until it is overwritten or removed.
"""

from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """Namespaced key-value record persisted across process restarts."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=5000000)  # JSON serialized
    stored_at: float = Field(index=True)  # Unix timestamp
    ttl: float
