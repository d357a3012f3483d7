"""
Data Models Package

This package contains all Pydantic models used in the My Pocket engine.
All data flowing through the system must conform to these schemas.
"""

from my_pocket.models.ledger import (
    Cartao,
    Compra,
    Despesa,
    EntityRef,
    EntityType,
    ExpenseCategory,
    Frequency,
    InstallmentSlice,
    LedgerEntity,
    Month,
    MonthTotals,
    RecurringTemplate,
    Role,
    TemplateKind,
    Workspace,
    WorkspaceMember,
    entity_from_dict,
)
from my_pocket.models.sync import (
    Accepted,
    Conflict,
    EntityDelta,
    MutationOp,
    MutationOrigin,
    NetworkError,
    PendingMutation,
    Rejected,
    SyncOutcome,
    SyncState,
    SyncStatus,
)
from my_pocket.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Cartao",
    "Compra",
    "Despesa",
    "EntityRef",
    "EntityType",
    "ExpenseCategory",
    "Frequency",
    "InstallmentSlice",
    "LedgerEntity",
    "Month",
    "MonthTotals",
    "RecurringTemplate",
    "Role",
    "TemplateKind",
    "Workspace",
    "WorkspaceMember",
    "entity_from_dict",
    # Sync models
    "Accepted",
    "Conflict",
    "EntityDelta",
    "MutationOp",
    "MutationOrigin",
    "NetworkError",
    "PendingMutation",
    "Rejected",
    "SyncOutcome",
    "SyncState",
    "SyncStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
