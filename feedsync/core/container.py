"""Dependency injection container for the sync engine.

There is no module-level container instance: the host application builds
one, supplies its remote and push sources, and creates one SyncSession per
signed-in identity from ``session_factory``.
"""

from dependency_injector import containers, providers

from feedsync.core.cache import CacheService
from feedsync.core.clock import SystemClock
from feedsync.core.config import Settings
from feedsync.core.database import Database
from feedsync.services.access import AllowAll
from feedsync.services.remote import NullPushSource
from feedsync.services.session import SyncSession


class Container(containers.DeclarativeContainer):
    """Sync engine dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    clock = providers.Singleton(
        SystemClock,
    )

    # Database (backs the SQLite cache backend)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (SQLite by default, Redis or memory per settings)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database,
        clock=clock
    )

    # Supplied by the host application
    remote_source = providers.Dependency()
    push_source = providers.Dependency(default=providers.Singleton(NullPushSource))
    access_policy = providers.Dependency(default=providers.Singleton(AllowAll))
    session_refresher = providers.Object(None)

    # One per signed-in identity: session_factory(identity="...")
    session_factory = providers.Factory(
        SyncSession,
        settings=settings,
        cache=cache,
        remote=remote_source,
        push=push_source,
        clock=clock,
        access_policy=access_policy,
        session_refresher=session_refresher
    )
