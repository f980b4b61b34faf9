"""Sync engine exception hierarchy."""

from typing import Optional


class SyncError(Exception):
    """Base exception for all sync-engine errors."""


class NotAuthenticated(SyncError):
    """No identity context; cache and remote work must not start."""

    def __init__(self, message: str = "No signed-in identity"):
        super().__init__(message)


class RemoteUnavailable(SyncError):
    """Network failure or timeout talking to the remote data source."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


class Conflict(SyncError):
    """Entity vanished or was modified incompatibly."""

    def __init__(self, entity_id: Optional[str], message: str):
        self.entity_id = entity_id
        super().__init__(message)


class MalformedCache(SyncError):
    """A cached entry could not be decoded."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Malformed cache entry {key}: {message}")
