"""Role-based permission checks."""

from my_pocket.permissions.guard import (
    Action,
    MUTATION_ACTION,
    PermissionDenied,
    action_for_mutation,
    authorize,
    can_edit,
    require,
    required_role,
)

__all__ = [
    "Action",
    "MUTATION_ACTION",
    "PermissionDenied",
    "action_for_mutation",
    "authorize",
    "can_edit",
    "require",
    "required_role",
]
