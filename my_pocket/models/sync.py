"""
Sync Models for My Pocket

Types exchanged between the sync coordinator, the push queue and the
remote backend.

DESIGN DECISION: The result of a push is a tagged variant (``SyncOutcome``)
with exactly four cases. The coordinator branches on the case, never on
error message text.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from my_pocket.models.ledger import EntityRef, new_id, utc_now


class MutationOp(str, Enum):
    """What a pending mutation does to its entity."""
    UPSERT = "upsert"
    DELETE = "delete"


class MutationOrigin(str, Enum):
    """
    Who caused a mutation.

    SYSTEM writes (lazily opened months, template instances) carry no user
    intent, so a conflict on them is resolved without a diagnostic.
    """
    USER = "user"
    SYSTEM = "system"


# =============================================================================
# PUSH OUTCOMES - tagged variant
# =============================================================================

class Accepted(BaseModel):
    """The remote applied the mutation and assigned ``version``."""
    kind: Literal["accepted"] = "accepted"
    version: int = Field(..., ge=0)


class Conflict(BaseModel):
    """
    The remote holds a different version of the entity.

    ``remote_value`` is the authoritative entity dict, or None when the
    entity no longer exists remotely.
    """
    kind: Literal["conflict"] = "conflict"
    remote_value: Optional[dict[str, Any]] = None
    remote_version: int = 0


class Rejected(BaseModel):
    """The remote refused the mutation (permission revoked, invalid, ...)."""
    kind: Literal["rejected"] = "rejected"
    reason: str


class NetworkError(BaseModel):
    """The remote could not be reached. The mutation stays queued."""
    kind: Literal["network_error"] = "network_error"
    reason: str


SyncOutcome = Annotated[
    Union[Accepted, Conflict, Rejected, NetworkError],
    Field(discriminator="kind"),
]

sync_outcome_adapter: TypeAdapter[SyncOutcome] = TypeAdapter(SyncOutcome)


# =============================================================================
# QUEUE AND STREAM RECORDS
# =============================================================================

class PendingMutation(BaseModel):
    """
    One local write waiting for remote confirmation.

    CRITICAL: ``mutation_id`` is generated once when the write is made and
    never changes, so replaying the same queued mutation after a crash or a
    reconnect is recognised by the remote as a duplicate.
    """
    mutation_id: str = Field(default_factory=new_id)
    sequence: int = Field(default=0, ge=0, description="Position in the push queue")
    op: MutationOp
    ref: EntityRef
    payload: Optional[dict[str, Any]] = Field(
        default=None,
        description="Entity dict for upserts (None for deletes)"
    )
    base_version: int = Field(
        default=0,
        ge=0,
        description="Remote version the local write was based on"
    )
    actor_id: Optional[str] = None
    origin: MutationOrigin = MutationOrigin.USER
    created_at: datetime = Field(default_factory=utc_now)


class EntityDelta(BaseModel):
    """One authoritative change delivered by the remote change stream."""
    ref: EntityRef
    op: MutationOp
    payload: Optional[dict[str, Any]] = None
    version: int = Field(..., ge=0)
    sequence: int = Field(..., ge=0, description="Monotonic position in the stream")


# =============================================================================
# SYNC STATE
# =============================================================================

class SyncState(str, Enum):
    """Per-workspace sync state."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.SYNCING}),
    SyncState.SYNCING: frozenset({SyncState.IDLE, SyncState.ERROR}),
    SyncState.ERROR: frozenset({SyncState.IDLE}),
}


class SyncStatus(BaseModel):
    """Snapshot of a workspace's sync health, for "pending sync" badges."""
    workspace_id: str
    state: SyncState
    online: bool
    pending: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
