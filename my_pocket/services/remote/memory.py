"""
In-Memory Remote Backend

A complete remote backend held in process memory. Used in tests and for
local development without a spreadsheet.

It behaves like the real thing where the sync engine cares:
- every entity is versioned and the shared conflict rule applies
- pushes are idempotent per ``mutation_id``
- every accepted write is appended to a change log with a sequence number
- deleting a workspace deletes everything in it
- writes are checked against the workspace's current membership
- it can be switched offline, delayed, or told to reject writes
"""

import asyncio
import copy
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from my_pocket.models.ledger import EntityRef, EntityType, Workspace
from my_pocket.models.sync import (
    Accepted,
    Conflict,
    EntityDelta,
    MutationOp,
    PendingMutation,
    Rejected,
    SyncOutcome,
)
from my_pocket.permissions.guard import action_for_mutation, authorize, required_role
from my_pocket.services.remote.interface import (
    NetworkUnavailable,
    NotFoundError,
    RemoteBackend,
    is_conflict,
)


logger = structlog.get_logger(__name__)

RejectionRule = Callable[[PendingMutation], Optional[str]]


class InMemoryRemoteBackend(RemoteBackend):
    """Process-local remote source of truth."""

    def __init__(self, enforce_permissions: bool = True):
        # ref -> (version, value); value None marks a deleted entity
        self._entities: dict[EntityRef, tuple[int, Optional[dict[str, Any]]]] = {}
        self._outcomes: dict[str, SyncOutcome] = {}
        self._changes: list[EntityDelta] = []
        self._waiters: set[asyncio.Event] = set()
        self._online = True
        self._enforce_permissions = enforce_permissions
        self.rejection_rule: Optional[RejectionRule] = None
        self.push_delay: float = 0.0
        self.push_log: list[PendingMutation] = []

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        self._online = online
        self._wake_subscribers()

    def value(self, ref: EntityRef) -> Optional[dict[str, Any]]:
        """Current remote value (None if absent or deleted)."""
        entry = self._entities.get(ref)
        return copy.deepcopy(entry[1]) if entry and entry[1] is not None else None

    def version(self, ref: EntityRef) -> int:
        entry = self._entities.get(ref)
        return entry[0] if entry else 0

    def values(self, workspace_id: str, entity_type: EntityType) -> list[dict[str, Any]]:
        """Every live remote value of one type in one workspace."""
        return [
            copy.deepcopy(value)
            for ref, (_, value) in sorted(self._entities.items(), key=lambda item: item[0].entity_id)
            if ref.workspace_id == workspace_id
            and ref.entity_type == entity_type
            and value is not None
        ]

    def seed(self, ref: EntityRef, value: dict[str, Any]) -> int:
        """Write a value directly, as another device would. Returns the new version."""
        version = self.version(ref) + 1
        self._store(ref, version, dict(value, version=version), MutationOp.UPSERT)
        return version

    def remove(self, ref: EntityRef) -> int:
        """Delete a value directly, as another device would."""
        version = self.version(ref) + 1
        self._store(ref, version, None, MutationOp.DELETE)
        return version

    # -------------------------------------------------------------------------
    # RemoteBackend
    # -------------------------------------------------------------------------

    async def push(self, mutation: PendingMutation) -> SyncOutcome:
        self.push_log.append(mutation)
        if self.push_delay:
            await asyncio.sleep(self.push_delay)
        if not self._online:
            raise NetworkUnavailable("remote backend is offline")

        if mutation.mutation_id in self._outcomes:
            return self._outcomes[mutation.mutation_id]

        outcome = self._apply(mutation)
        self._outcomes[mutation.mutation_id] = outcome
        logger.debug(
            "remote_push",
            ref=str(mutation.ref),
            op=mutation.op.value,
            outcome=outcome.kind,
        )
        return outcome

    async def fetch(self, ref: EntityRef) -> dict[str, Any]:
        if not self._online:
            raise NetworkUnavailable("remote backend is offline")
        value = self.value(ref)
        if value is None:
            raise NotFoundError(ref)
        return value

    async def subscribe_changes(self, workspace_id: str, since: int = 0) -> AsyncIterator[EntityDelta]:
        cursor = since
        while True:
            if not self._online:
                raise NetworkUnavailable("change stream disconnected")
            pending = [
                delta for delta in self._changes
                if delta.ref.workspace_id == workspace_id and delta.sequence > cursor
            ]
            for delta in pending:
                cursor = delta.sequence
                yield delta.model_copy(deep=True)
            if pending:
                continue

            event = asyncio.Event()
            self._waiters.add(event)
            try:
                await event.wait()
            finally:
                self._waiters.discard(event)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _wake_subscribers(self) -> None:
        for event in list(self._waiters):
            event.set()

    def _store(
        self,
        ref: EntityRef,
        version: int,
        value: Optional[dict[str, Any]],
        op: MutationOp,
    ) -> None:
        self._entities[ref] = (version, copy.deepcopy(value))
        self._changes.append(EntityDelta(
            ref=ref,
            op=op,
            payload=copy.deepcopy(value),
            version=version,
            sequence=len(self._changes) + 1,
        ))
        self._wake_subscribers()

    def _permission_problem(self, mutation: PendingMutation) -> Optional[str]:
        workspace_ref = EntityRef(
            workspace_id=mutation.ref.workspace_id,
            entity_type=EntityType.WORKSPACE,
            entity_id=mutation.ref.workspace_id,
        )
        workspace_value = self.value(workspace_ref)
        if workspace_value is None:
            if mutation.ref.entity_type == EntityType.WORKSPACE and mutation.op == MutationOp.UPSERT:
                return None
            return "workspace does not exist"

        workspace = Workspace.model_validate(workspace_value)
        action = action_for_mutation(mutation.ref.entity_type, mutation.op == MutationOp.DELETE)
        if mutation.actor_id is None or not authorize(mutation.actor_id, workspace, action):
            return f"permission denied: requires {required_role(action).value}"
        return None

    def _apply(self, mutation: PendingMutation) -> SyncOutcome:
        if self.rejection_rule is not None:
            reason = self.rejection_rule(mutation)
            if reason:
                return Rejected(reason=reason)

        if self._enforce_permissions:
            problem = self._permission_problem(mutation)
            if problem:
                return Rejected(reason=problem)

        ref = mutation.ref
        current_version = self.version(ref)
        current_value = self.value(ref)
        if is_conflict(mutation.base_version, current_version, current_value is not None):
            return Conflict(remote_value=current_value, remote_version=current_version)

        version = current_version + 1
        if mutation.op == MutationOp.DELETE:
            if current_value is None:
                return Accepted(version=current_version)
            self._store(ref, version, None, MutationOp.DELETE)
            if ref.entity_type == EntityType.WORKSPACE:
                self._cascade_workspace_delete(ref.workspace_id)
            return Accepted(version=version)

        self._store(ref, version, dict(mutation.payload or {}, version=version), MutationOp.UPSERT)
        return Accepted(version=version)

    def _cascade_workspace_delete(self, workspace_id: str) -> None:
        for ref, (version, value) in list(self._entities.items()):
            if ref.workspace_id == workspace_id and value is not None:
                self._store(ref, version + 1, None, MutationOp.DELETE)
