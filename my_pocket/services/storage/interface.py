"""
Abstract Local Cache Interface

DESIGN DECISION: We define an abstract interface for the local cache.
This allows us to:
1. Use SQLite on devices (durable across restarts)
2. Use in-memory storage for testing
3. Keep the sync coordinator decoupled from the storage implementation

The interface is intentionally simple - a row store addressed by
``(workspace_id, entity_type, entity_id)`` holding JSON-compatible dicts.
Besides entity types, the coordinator uses two reserved namespaces in the
same store: ``outbox`` (the push queue) and ``meta`` (stream cursors).

Calls are synchronous: the cache is local disk, and reads must never wait
on anything else.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


OUTBOX_NAMESPACE = "outbox"
META_NAMESPACE = "meta"


class LocalCacheStore(ABC):
    """
    Abstract interface for the local persistent cache.

    Any storage implementation (SQLite, in-memory, ...) must implement
    these methods.
    """

    @abstractmethod
    def get(self, workspace_id: str, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        """
        Read one row.

        Returns:
            The stored dict, or None if absent
        """
        pass

    @abstractmethod
    def put(self, workspace_id: str, entity_type: str, entity_id: str, value: dict[str, Any]) -> None:
        """
        Insert or replace one row.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    def delete(self, workspace_id: str, entity_type: str, entity_id: str) -> bool:
        """
        Remove one row.

        Returns:
            True if a row was removed
        """
        pass

    @abstractmethod
    def scan(self, workspace_id: str, entity_type: str) -> list[tuple[str, dict[str, Any]]]:
        """
        Every ``(entity_id, value)`` of one type in one workspace,
        ordered by entity id.
        """
        pass

    @abstractmethod
    def workspace_ids(self) -> list[str]:
        """Every workspace with at least one row."""
        pass

    @abstractmethod
    def purge_workspace(self, workspace_id: str) -> int:
        """
        Remove every row of a workspace (used on workspace deletion).

        Returns:
            Number of rows removed
        """
        pass

    def close(self) -> None:
        """Release any underlying resource."""
        pass


class StorageError(Exception):
    """Base exception for local cache operations."""
    pass
