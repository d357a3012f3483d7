"""
Permission Guard

Decides whether an actor may perform an action in a workspace.

DESIGN DECISION: Every action maps to the minimum role that may perform
it, and roles are totally ordered (viewer < editor < owner). A denial
names the role that would have been required so the UI can show a
targeted message ("only the owner can remove members").

CRITICAL: The guard runs before any validation or state change. A denied
request never touches the store, the cache or the push queue.
"""

from enum import Enum
from typing import Optional

from my_pocket.models.ledger import EntityType, Role, Workspace


class Action(str, Enum):
    """Actions that are subject to authorization."""
    READ = "read"
    EDIT_EXPENSES = "edit_expenses"
    EDIT_CARDS = "edit_cards"
    EDIT_PURCHASES = "edit_purchases"
    EDIT_BALANCE = "edit_balance"
    EDIT_TEMPLATES = "edit_templates"
    RENAME_WORKSPACE = "rename_workspace"
    MANAGE_MEMBERS = "manage_members"
    DELETE_WORKSPACE = "delete_workspace"


REQUIRED_ROLE: dict[Action, Role] = {
    Action.READ: Role.VIEWER,
    Action.EDIT_EXPENSES: Role.EDITOR,
    Action.EDIT_CARDS: Role.EDITOR,
    Action.EDIT_PURCHASES: Role.EDITOR,
    Action.EDIT_BALANCE: Role.EDITOR,
    Action.EDIT_TEMPLATES: Role.EDITOR,
    Action.RENAME_WORKSPACE: Role.OWNER,
    Action.MANAGE_MEMBERS: Role.OWNER,
    Action.DELETE_WORKSPACE: Role.OWNER,
}


class PermissionDenied(Exception):
    """The actor's role is below the role the action requires."""

    def __init__(
        self,
        required_role: Role,
        action: Action,
        actor_role: Optional[Role] = None,
    ):
        self.required_role = required_role
        self.action = action
        self.actor_role = actor_role
        held = actor_role.value if actor_role else "no role"
        super().__init__(
            f"'{action.value}' requires role '{required_role.value}' (actor has {held})"
        )


MUTATION_ACTION: dict[EntityType, Action] = {
    EntityType.WORKSPACE: Action.MANAGE_MEMBERS,
    EntityType.MONTH: Action.EDIT_BALANCE,
    EntityType.DESPESA: Action.EDIT_EXPENSES,
    EntityType.CARTAO: Action.EDIT_CARDS,
    EntityType.COMPRA: Action.EDIT_PURCHASES,
    EntityType.TEMPLATE: Action.EDIT_TEMPLATES,
}


def action_for_mutation(entity_type: EntityType, deleting: bool = False) -> Action:
    """The action a write to an entity of ``entity_type`` amounts to."""
    if entity_type == EntityType.WORKSPACE and deleting:
        return Action.DELETE_WORKSPACE
    return MUTATION_ACTION[entity_type]


def required_role(action: Action) -> Role:
    return REQUIRED_ROLE[action]


def authorize(actor_id: str, workspace: Workspace, action: Action) -> bool:
    """True if the actor's role in the workspace covers the action."""
    role = workspace.role_of(actor_id)
    return role is not None and role.covers(required_role(action))


def require(actor_id: str, workspace: Workspace, action: Action) -> Role:
    """
    Authorize or raise.

    Returns the actor's role.

    Raises:
        PermissionDenied: If the actor is not a member or their role is too low
    """
    role = workspace.role_of(actor_id)
    needed = required_role(action)
    if role is None or not role.covers(needed):
        raise PermissionDenied(needed, action, role)
    return role


def can_edit(actor_id: str, workspace: Workspace) -> bool:
    """Editors and owners may change ledger data."""
    return authorize(actor_id, workspace, Action.EDIT_EXPENSES)
