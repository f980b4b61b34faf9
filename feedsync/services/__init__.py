"""Sync engine services.

- Action Queue: per-key de-duplication of in-flight mutations
- Optimistic Mutator: local patch, remote call, reconcile or roll back
- Feed Synchronizer: cache-first paginated loads with silent refresh
- Realtime Reconciler: push-driven targeted refresh with poll fallback
- Visibility Monitor: freshness check after long background idles
"""

from .action_queue import ActionQueue
from .mutator import OptimisticMutator, toggle, increment, set_counter
from .feed_sync import FeedSynchronizer
from .realtime import RealtimeReconciler, RealtimeSubscription
from .visibility import VisibilityMonitor
from .remote import RemoteDataSource, PushSource, NullPushSource
from .access import (
    ContentAccessPolicy,
    AllowAll,
    MemberTierAccessPolicy,
    FailOpen,
)
from .feeds import (
    HOME_FEED,
    CONVERSATIONS,
    MEMBER_DIRECTORY,
    MARKETPLACE,
    PRESETS,
    get_preset,
)
from .rpc_source import HttpRpcSource, RpcRoute, ActionRoute, DEFAULT_ROUTES
from .session import SyncSession

__all__ = [
    # Engine
    "ActionQueue",
    "OptimisticMutator",
    "toggle",
    "increment",
    "set_counter",
    "FeedSynchronizer",
    "RealtimeReconciler",
    "RealtimeSubscription",
    "VisibilityMonitor",
    "SyncSession",
    # Remote contracts
    "RemoteDataSource",
    "PushSource",
    "NullPushSource",
    "HttpRpcSource",
    "RpcRoute",
    "ActionRoute",
    "DEFAULT_ROUTES",
    # Access
    "ContentAccessPolicy",
    "AllowAll",
    "MemberTierAccessPolicy",
    "FailOpen",
    # Presets
    "HOME_FEED",
    "CONVERSATIONS",
    "MEMBER_DIRECTORY",
    "MARKETPLACE",
    "PRESETS",
    "get_preset",
]
