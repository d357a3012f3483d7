"""
Local Cache Package

Provides the abstract local cache interface and its implementations.
SQLite is the durable default; the in-memory store is used in tests.
"""

from my_pocket.services.storage.interface import (
    META_NAMESPACE,
    OUTBOX_NAMESPACE,
    LocalCacheStore,
    StorageError,
)
from my_pocket.services.storage.memory import InMemoryCacheStore
from my_pocket.services.storage.sqlite_cache import SQLiteCacheStore

__all__ = [
    # Interface
    "LocalCacheStore",
    "META_NAMESPACE",
    "OUTBOX_NAMESPACE",
    # Exceptions
    "StorageError",
    # Implementations
    "InMemoryCacheStore",
    "SQLiteCacheStore",
]
