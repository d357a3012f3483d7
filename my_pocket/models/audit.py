"""
Audit Models for My Pocket

Every significant action in the engine is recorded as an audit event.
This provides:
1. Complete traceability of mutations and sync decisions
2. The user-facing diagnostics ("synced with conflict", "degraded sync")
3. Debugging information when things go wrong

DESIGN DECISION: Audit events are append-only. We never delete or modify them.
Sync problems are never raised at the user; they become diagnostics here.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from my_pocket.models.ledger import EntityRef, utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Ledger mutations
    MUTATION_APPLIED = "mutation_applied"
    MONTH_MATERIALIZED = "month_materialized"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION_FAILED = "validation_failed"

    # Sync
    PUSH_ACCEPTED = "push_accepted"
    SYNCED_WITH_CONFLICT = "synced_with_conflict"
    REMOTE_REJECTED = "remote_rejected"
    DEGRADED_SYNC = "degraded_sync"
    SYNC_STATE_CHANGED = "sync_state_changed"
    RECONCILE_COMPLETED = "reconcile_completed"
    RECONCILE_SUPERSEDED = "reconcile_superseded"

    # Event bus
    SUBSCRIBER_FAILED = "subscriber_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    workspace_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'despesa', 'compra', 'month')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one reconcile pass)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # User action tracking
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    @property
    def is_diagnostic(self) -> bool:
        """Warnings and above are shown to the user."""
        return self.severity in (
            AuditSeverity.WARNING,
            AuditSeverity.ERROR,
            AuditSeverity.CRITICAL,
        )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "workspace_id": self.workspace_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


def _ref_fields(ref: EntityRef) -> dict:
    return {
        "workspace_id": ref.workspace_id,
        "entity_type": ref.entity_type.value,
        "entity_id": ref.entity_id,
    }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_applied(ref, "upsert", actor_id)
        event = AuditEventBuilder.synced_with_conflict(ref, remote_version)
    """

    @staticmethod
    def mutation_applied(
        ref: EntityRef,
        operation: str,
        actor_id: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_APPLIED,
            **_ref_fields(ref),
            description=f"Local {operation} of {ref.entity_type.value}",
            details={
                "operation": operation,
                "actor_id": actor_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def month_materialized(
        workspace_id: str,
        month_id: str,
        saldo_inicial: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_MATERIALIZED,
            workspace_id=workspace_id,
            entity_type="month",
            entity_id=month_id,
            description=f"Month {month_id} opened with balance {saldo_inicial}",
            details={"saldo_inicial": saldo_inicial},
        )

    @staticmethod
    def permission_denied(
        workspace_id: str,
        actor_id: str,
        action: str,
        required_role: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERMISSION_DENIED,
            severity=AuditSeverity.WARNING,
            workspace_id=workspace_id,
            entity_type="workspace",
            entity_id=workspace_id,
            description=f"Action '{action}' requires role '{required_role}'",
            details={
                "actor_id": actor_id,
                "action": action,
                "required_role": required_role,
            },
            is_user_action=True,
        )

    @staticmethod
    def validation_failed(
        workspace_id: str,
        entity_type: str,
        field: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            workspace_id=workspace_id,
            entity_type=entity_type,
            description=f"Invalid {field}: {reason}"[:500],
            details={"field": field, "reason": reason},
            is_user_action=True,
        )

    @staticmethod
    def push_accepted(
        ref: EntityRef,
        version: int,
        mutation_id: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PUSH_ACCEPTED,
            severity=AuditSeverity.DEBUG,
            **_ref_fields(ref),
            description=f"Remote accepted {ref.entity_type.value} at version {version}",
            details={"version": version, "mutation_id": mutation_id},
        )

    @staticmethod
    def synced_with_conflict(
        ref: EntityRef,
        remote_version: int,
        mutation_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNCED_WITH_CONFLICT,
            severity=AuditSeverity.WARNING,
            **_ref_fields(ref),
            correlation_id=correlation_id,
            description=(
                f"Your change to this {ref.entity_type.value} conflicted with a newer "
                "version and was replaced by it"
            ),
            details={"remote_version": remote_version, "mutation_id": mutation_id},
            error_code="sync_conflict",
        )

    @staticmethod
    def remote_rejected(
        ref: EntityRef,
        reason: str,
        mutation_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_REJECTED,
            severity=AuditSeverity.ERROR,
            **_ref_fields(ref),
            correlation_id=correlation_id,
            description=(
                f"Your change to this {ref.entity_type.value} was refused and the "
                "stored version was restored"
            ),
            details={"mutation_id": mutation_id},
            error_code="remote_rejected",
            error_message=reason,
        )

    @staticmethod
    def degraded_sync(
        workspace_id: str,
        pending: int,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEGRADED_SYNC,
            severity=AuditSeverity.WARNING,
            workspace_id=workspace_id,
            entity_type="workspace",
            entity_id=workspace_id,
            correlation_id=correlation_id,
            description=f"Sync degraded: {pending} change(s) waiting to be sent",
            details={"pending": pending},
            error_code="network_unavailable",
            error_message=error_message,
        )

    @staticmethod
    def sync_state_changed(
        workspace_id: str,
        previous: str,
        current: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STATE_CHANGED,
            severity=AuditSeverity.DEBUG,
            workspace_id=workspace_id,
            entity_type="workspace",
            entity_id=workspace_id,
            description=f"Sync state {previous} -> {current}",
            details={"previous": previous, "current": current},
        )

    @staticmethod
    def reconcile_completed(
        workspace_id: str,
        generation: int,
        replayed: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILE_COMPLETED,
            workspace_id=workspace_id,
            entity_type="workspace",
            entity_id=workspace_id,
            correlation_id=correlation_id,
            description=f"Reconciliation pass {generation} replayed {replayed} change(s)",
            details={"generation": generation, "replayed": replayed},
        )

    @staticmethod
    def reconcile_superseded(
        workspace_id: str,
        generation: int,
        completed_generation: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILE_SUPERSEDED,
            severity=AuditSeverity.DEBUG,
            workspace_id=workspace_id,
            entity_type="workspace",
            entity_id=workspace_id,
            correlation_id=correlation_id,
            description=(
                f"Late result of pass {generation} discarded "
                f"(pass {completed_generation} already completed)"
            ),
            details={
                "generation": generation,
                "completed_generation": completed_generation,
            },
        )

    @staticmethod
    def subscriber_failed(
        topic: str,
        handler: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIBER_FAILED,
            severity=AuditSeverity.ERROR,
            description=f"Subscriber {handler} failed on {topic}",
            details={"topic": topic, "handler": handler},
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
