"""Dependency injection container for the cache."""

from dependency_injector import containers, providers

from .cache import CacheEngine
from .config import CacheOptions
from .database import RecordStore
from .locks import create_lock
from .serialization import create_serializer


class Container(containers.DeclarativeContainer):
    """Cache dependency injection container."""

    # Settings
    options = providers.Singleton(
        CacheOptions,
    )

    # Record store (owns the SQLAlchemy engine)
    store = providers.Singleton(
        RecordStore,
        options=options
    )

    serializer = providers.Singleton(
        create_serializer,
        name=options.provided.serializer,
        compress=options.provided.enable_compression
    )

    # GetOrAdd lock (database advisory lock or Redis lease)
    lock = providers.Singleton(
        create_lock,
        options=options,
        store=store
    )

    cache = providers.Singleton(
        CacheEngine,
        options=options,
        store=store,
        lock=lock,
        serializer=serializer
    )


# Global container instance
container = Container()
