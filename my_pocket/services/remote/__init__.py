"""
Remote Backend Package

The remote source of truth the sync coordinator pushes to and listens on.
Google Sheets is the production backend; the in-memory backend is used in
tests and offline development.
"""

from my_pocket.services.remote.interface import (
    NetworkUnavailable,
    NotFoundError,
    RemoteBackend,
    RemoteError,
    RemoteRejected,
    SyncConflict,
    is_conflict,
    outcome_from_error,
)
from my_pocket.services.remote.memory import InMemoryRemoteBackend
from my_pocket.services.remote.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsRemoteBackend,
    SheetsConnectionError,
)

__all__ = [
    # Interface
    "RemoteBackend",
    "is_conflict",
    "outcome_from_error",
    # Exceptions
    "NetworkUnavailable",
    "NotFoundError",
    "RemoteError",
    "RemoteRejected",
    "SheetsConnectionError",
    "SyncConflict",
    # Implementations
    "GoogleSheetsClient",
    "GoogleSheetsRemoteBackend",
    "InMemoryRemoteBackend",
]
