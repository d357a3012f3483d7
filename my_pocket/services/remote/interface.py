"""
Abstract Remote Backend Interface

DESIGN DECISION: The remote source of truth is consumed through three
calls only:

- ``push(mutation)``: apply one queued mutation, answering with a
  ``SyncOutcome`` (accepted / conflict / rejected / network_error)
- ``fetch(ref)``: the authoritative value of one entity
- ``subscribe_changes(workspace_id, since)``: an async stream of
  authoritative entity deltas, resumable from a sequence number

Any backend (Google Sheets, an in-memory fake, a hosted database) must
implement these. Backends may raise the exceptions below; the coordinator
normalizes them into a ``SyncOutcome`` with ``outcome_from_error`` so it
never inspects error messages.

CONFLICT RULE: every backend versions each entity. A push based on a
version other than the current one conflicts, except that creating an
entity that does not exist (never existed or was deleted) is always
allowed.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from my_pocket.models.ledger import EntityRef
from my_pocket.models.sync import (
    Conflict,
    EntityDelta,
    NetworkError,
    PendingMutation,
    Rejected,
    SyncOutcome,
)


class RemoteBackend(ABC):
    """
    Abstract interface for the remote source of truth.
    """

    @abstractmethod
    async def push(self, mutation: PendingMutation) -> SyncOutcome:
        """
        Apply a mutation remotely.

        Replaying a mutation with the same ``mutation_id`` must return the
        original outcome without applying it twice.

        Raises:
            NetworkUnavailable: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def fetch(self, ref: EntityRef) -> dict[str, Any]:
        """
        Get the authoritative value of an entity.

        Raises:
            NotFoundError: If the entity does not exist remotely
            NetworkUnavailable: If the backend cannot be reached
        """
        pass

    @abstractmethod
    def subscribe_changes(self, workspace_id: str, since: int = 0) -> AsyncIterator[EntityDelta]:
        """
        Stream deltas of a workspace with ``sequence > since``.

        The stream ends by raising NetworkUnavailable when the connection
        drops; the caller resubscribes from the last sequence it applied.
        """
        pass

    async def close(self) -> None:
        """Release any underlying resource."""
        pass


def is_conflict(base_version: int, current_version: int, exists: bool) -> bool:
    """Apply the conflict rule shared by every backend."""
    if not exists and base_version == 0:
        return False
    return base_version != current_version


# =============================================================================
# EXCEPTIONS
# =============================================================================

class RemoteError(Exception):
    """Base exception for remote backend operations."""
    pass


class NetworkUnavailable(RemoteError):
    """The backend could not be reached. Writes stay queued."""
    pass


class NotFoundError(RemoteError):
    """Entity not found remotely."""

    def __init__(self, ref: EntityRef):
        self.ref = ref
        super().__init__(f"Not found remotely: {ref}")


class SyncConflict(RemoteError):
    """The remote holds a different version of the entity."""

    def __init__(
        self,
        ref: EntityRef,
        remote_value: Optional[dict[str, Any]],
        remote_version: int = 0,
    ):
        self.ref = ref
        self.remote_value = remote_value
        self.remote_version = remote_version
        super().__init__(f"Conflict on {ref} (remote version {remote_version})")


class RemoteRejected(RemoteError):
    """The remote refused the write. Fatal for that write."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def outcome_from_error(error: RemoteError) -> SyncOutcome:
    """Normalize a backend exception into a ``SyncOutcome``."""
    if isinstance(error, SyncConflict):
        return Conflict(remote_value=error.remote_value, remote_version=error.remote_version)
    if isinstance(error, RemoteRejected):
        return Rejected(reason=error.reason)
    if isinstance(error, NetworkUnavailable):
        return NetworkError(reason=str(error) or "network unavailable")
    return Rejected(reason=str(error) or type(error).__name__)
