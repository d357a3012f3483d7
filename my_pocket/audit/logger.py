"""
Audit Logger

DESIGN DECISION: Every significant action in the engine is logged.
This provides:
1. Complete traceability
2. Debugging capability
3. The diagnostics the user sees ("synced with conflict", "degraded sync")

The audit logger:
- Is synchronous, because it is called from inside event delivery and
  mutation paths that must not yield to the event loop
- Gracefully handles failures (doesn't crash the app if logging fails)
- Keeps a bounded buffer of recent events for the UI to read
- Supports correlation IDs to trace related events
"""

import logging
from collections import deque
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from my_pocket.models.audit import AuditEvent, AuditEventBuilder, AuditEventType, AuditSeverity
from my_pocket.models.ledger import EntityRef


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through stdlib logging at ``level``."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))


DiagnosticListener = Callable[[AuditEvent], None]


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An in-memory ring buffer (for the diagnostics panel)
    """

    def __init__(self, buffer_size: int = 200):
        """
        Initialize audit logger.

        Args:
            buffer_size: How many recent events are kept in memory.
        """
        self._events: deque[AuditEvent] = deque(maxlen=buffer_size)
        self._listeners: list[DiagnosticListener] = []
        self._logger = structlog.get_logger("my_pocket.audit")

    def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Never raises.

        Returns True if every diagnostic listener accepted the event.
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        self._events.append(event)

        if not event.is_diagnostic:
            return True

        delivered = True
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "diagnostic_listener_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                delivered = False
        return delivered

    def add_listener(self, listener: DiagnosticListener) -> Callable[[], None]:
        """
        Register a callback for diagnostics (warning severity and above).

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def recent(
        self,
        limit: int = 50,
        event_type: Optional[AuditEventType] = None,
        workspace_id: Optional[str] = None,
    ) -> list[AuditEvent]:
        """Most recent events first, optionally filtered."""
        events = [
            event for event in reversed(self._events)
            if (event_type is None or event.event_type == event_type)
            and (workspace_id is None or event.workspace_id == workspace_id)
        ]
        return events[:limit]

    def diagnostics(self, workspace_id: Optional[str] = None) -> list[AuditEvent]:
        """Recent events the user should see, newest first."""
        return [
            event for event in self.recent(limit=len(self._events), workspace_id=workspace_id)
            if event.is_diagnostic
        ]

    def log_mutation_applied(self, ref: EntityRef, operation: str, actor_id: str) -> None:
        """Log a local write."""
        self.log(AuditEventBuilder.mutation_applied(ref, operation, actor_id))

    def log_month_materialized(self, workspace_id: str, month_id: str, saldo_inicial: str) -> None:
        self.log(AuditEventBuilder.month_materialized(workspace_id, month_id, saldo_inicial))

    def log_permission_denied(
        self,
        workspace_id: str,
        actor_id: str,
        action: str,
        required_role: str,
    ) -> None:
        """Log an authorization failure."""
        self.log(AuditEventBuilder.permission_denied(workspace_id, actor_id, action, required_role))

    def log_validation_failed(
        self,
        workspace_id: str,
        entity_type: str,
        field: str,
        reason: str,
    ) -> None:
        self.log(AuditEventBuilder.validation_failed(workspace_id, entity_type, field, reason))

    def log_push_accepted(self, ref: EntityRef, version: int, mutation_id: str) -> None:
        self.log(AuditEventBuilder.push_accepted(ref, version, mutation_id))

    def log_synced_with_conflict(
        self,
        ref: EntityRef,
        remote_version: int,
        mutation_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a conflict resolved by overwriting the local copy."""
        self.log(AuditEventBuilder.synced_with_conflict(
            ref, remote_version, mutation_id, correlation_id,
        ))

    def log_remote_rejected(
        self,
        ref: EntityRef,
        reason: str,
        mutation_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rejected write that was compensated locally."""
        self.log(AuditEventBuilder.remote_rejected(ref, reason, mutation_id, correlation_id))

    def log_degraded_sync(
        self,
        workspace_id: str,
        pending: int,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        self.log(AuditEventBuilder.degraded_sync(workspace_id, pending, error_message, correlation_id))

    def log_sync_state_changed(self, workspace_id: str, previous: str, current: str) -> None:
        self.log(AuditEventBuilder.sync_state_changed(workspace_id, previous, current))

    def log_reconcile_completed(
        self,
        workspace_id: str,
        generation: int,
        replayed: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        self.log(AuditEventBuilder.reconcile_completed(
            workspace_id, generation, replayed, correlation_id,
        ))

    def log_reconcile_superseded(
        self,
        workspace_id: str,
        generation: int,
        completed_generation: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        self.log(AuditEventBuilder.reconcile_superseded(
            workspace_id, generation, completed_generation, correlation_id,
        ))

    def log_subscriber_failed(self, topic: str, handler: str, error_message: str) -> None:
        """Log an event bus subscriber that raised."""
        self.log(AuditEventBuilder.subscriber_failed(topic, handler, error_message))

    def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a reconciliation pass and pass it through
    every event the pass produces.
    """
    return uuid4()
