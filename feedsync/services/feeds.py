"""Feed presets for the community client collections."""

from typing import Dict

from feedsync.constants import KIND_CONVERSATIONS, KIND_LISTINGS, KIND_MEMBERS, KIND_POSTS
from feedsync.models.feed import FeedDefinition, ItemSchema

# Counter and flag names as returned by the backend procedures
LIKES = "likes_count"
COMMENTS = "comments_count"
SHARES = "shares_count"
HAS_LIKED = "has_liked"
HAS_SHARED = "has_shared"
UNREAD = "unread_count"
FAVORITES = "favorite_count"
VIEWS = "views_count"
IS_FAVORITED = "is_favorited"

HOME_FEED = FeedDefinition(
    kind=KIND_POSTS,
    ttl=300.0,
    item_schema=ItemSchema(
        counters=(LIKES, COMMENTS, SHARES),
        flags=(HAS_LIKED, HAS_SHARED),
    ),
)

CONVERSATIONS = FeedDefinition(
    kind=KIND_CONVERSATIONS,
    ttl=120.0,
    item_schema=ItemSchema(
        id_field="conversation_id",
        counters=(UNREAD,),
        created_field="last_message_at",
    ),
)

MEMBER_DIRECTORY = FeedDefinition(
    kind=KIND_MEMBERS,
    page_size=20,
    ttl=900.0,
    default_params={"search": None, "business_type": None, "market_area": None},
    exclude={"role": "admin"},
)

MARKETPLACE = FeedDefinition(
    kind=KIND_LISTINGS,
    page_size=20,
    ttl=300.0,
    item_schema=ItemSchema(
        counters=(FAVORITES, VIEWS),
        flags=(IS_FAVORITED,),
    ),
    default_params={"category": None, "search": None, "location": None},
)

PRESETS: Dict[str, FeedDefinition] = {
    definition.kind: definition
    for definition in (HOME_FEED, CONVERSATIONS, MEMBER_DIRECTORY, MARKETPLACE)
}


def get_preset(kind: str) -> FeedDefinition:
    """Look up a preset by entity kind."""
    try:
        return PRESETS[kind]
    except KeyError:
        raise ValueError(f"Unknown feed kind: {kind}") from None
