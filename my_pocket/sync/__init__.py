"""
Sync Package

The coordinator (ledger operations), the engine underneath it (push queue
draining, change stream, connectivity) and the durable push queue.
"""

from my_pocket.sync.coordinator import EntityNotFound, SyncCoordinator, WorkspaceNotFound
from my_pocket.sync.engine import InvalidStateTransition, SyncEngine, WorkspaceSession
from my_pocket.sync.outbox import PushQueue

__all__ = [
    "EntityNotFound",
    "InvalidStateTransition",
    "PushQueue",
    "SyncCoordinator",
    "SyncEngine",
    "WorkspaceNotFound",
    "WorkspaceSession",
]
