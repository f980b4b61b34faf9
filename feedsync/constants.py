"""Centralized constants for entity kinds and mutation actions.

Single source of truth for the strings shared by feed presets, the RPC
adapter and action-queue keys.
"""

# =============================================================================
# ENTITY KINDS
# =============================================================================

KIND_POSTS = 'posts'
KIND_CONVERSATIONS = 'conversations'
KIND_MEMBERS = 'members'
KIND_LISTINGS = 'listings'

# =============================================================================
# MUTATION ACTIONS
# =============================================================================

ACTION_LIKE = 'like'
ACTION_SHARE = 'share'
ACTION_COMMENT = 'comment'
ACTION_MARK_READ = 'mark_read'
ACTION_FAVORITE = 'favorite'
ACTION_CREATE = 'create'

# Id prefix for locally created items awaiting their server id
TEMP_ID_PREFIX = 'temp-'


def action_key(action: str, entity_id: str) -> str:
    """Action-queue key for one logical mutation, e.g. ``like_42``."""
    return f"{action}_{entity_id}"
