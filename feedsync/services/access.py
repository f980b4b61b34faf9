"""Visibility policy for items that arrive through push notifications.

Usage:
    from feedsync.services.access import FailOpen, MemberTierAccessPolicy

    policy = FailOpen(MemberTierAccessPolicy(directory))
    if await policy.can_view(item, viewer_id):
        ...
"""

from typing import Optional, Protocol, Tuple

from feedsync.core.logging import get_logger
from feedsync.models.feed import FeedItem

logger = get_logger(__name__)

VERIFIED_STATUS = "verified"


class ContentAccessPolicy(Protocol):
    """Protocol for viewer access checks."""

    async def can_view(self, item: FeedItem, viewer_id: str) -> bool:
        ...


class MembershipDirectory(Protocol):
    """Lookups needed by the member-tier rule."""

    async def get_user_status(self, user_id: str) -> Optional[str]:
        """Author's status (e.g. ``verified``), None when no profile exists."""
        ...

    async def is_connected(self, viewer_id: str, user_id: str) -> bool:
        """Whether an accepted connection exists in either direction."""
        ...


class AllowAll:
    """Everything is visible (default policy)."""

    async def can_view(self, item: FeedItem, viewer_id: str) -> bool:
        return True


class MemberTierAccessPolicy:
    """Member-tier authors are visible only to their connections.

    - own content is always visible
    - content whose author has no profile is visible
    - verified authors are visible to everyone
    - anyone else is visible only to accepted connections
    """

    def __init__(self, directory: MembershipDirectory,
                 author_fields: Tuple[str, ...] = ("author_id", "user_id")):
        self.directory = directory
        self.author_fields = author_fields

    def author_of(self, item: FeedItem) -> Optional[str]:
        for name in self.author_fields:
            value = item.content.get(name)
            if value:
                return str(value)
        return None

    async def can_view(self, item: FeedItem, viewer_id: str) -> bool:
        if not viewer_id:
            return False

        author_id = self.author_of(item)
        if author_id is None or author_id == viewer_id:
            return True

        status = await self.directory.get_user_status(author_id)
        if status is None or status == VERIFIED_STATUS:
            return True

        return await self.directory.is_connected(viewer_id, author_id)


class FailOpen:
    """Wraps a policy so that any error while checking shows the item.

    This keeps a lookup outage from hiding content, at the cost of showing
    member-tier content to non-connections while lookups fail.
    """

    def __init__(self, policy: ContentAccessPolicy):
        self.policy = policy

    async def can_view(self, item: FeedItem, viewer_id: str) -> bool:
        try:
            return await self.policy.can_view(item, viewer_id)
        except Exception as e:
            logger.warning("Access check failed, showing item",
                           entity_id=item.id, viewer_id=viewer_id, error=str(e))
            return True
