"""
Tests for the permission guard.
"""

import pytest

from my_pocket.models.ledger import EntityType, Role, Workspace, WorkspaceMember
from my_pocket.permissions import (
    Action,
    PermissionDenied,
    action_for_mutation,
    authorize,
    can_edit,
    require,
)


@pytest.fixture
def workspace() -> Workspace:
    return Workspace(
        name="Casa da Ana",
        owner_id="ana",
        members=[
            WorkspaceMember(user_id="ana", role=Role.OWNER),
            WorkspaceMember(user_id="bia", role=Role.EDITOR),
            WorkspaceMember(user_id="caio", role=Role.VIEWER),
        ],
    )


class TestAuthorize:
    """Tests for the role table."""

    def test_everyone_can_read(self, workspace):
        for user_id in ["ana", "bia", "caio"]:
            assert authorize(user_id, workspace, Action.READ)

    def test_non_members_cannot_read(self, workspace):
        assert not authorize("davi", workspace, Action.READ)

    def test_editors_edit_ledger_data(self, workspace):
        for action in [Action.EDIT_EXPENSES, Action.EDIT_CARDS, Action.EDIT_BALANCE, Action.EDIT_TEMPLATES]:
            assert authorize("bia", workspace, action)
            assert not authorize("caio", workspace, action)

    def test_only_owner_manages_workspace(self, workspace):
        for action in [Action.RENAME_WORKSPACE, Action.MANAGE_MEMBERS, Action.DELETE_WORKSPACE]:
            assert authorize("ana", workspace, action)
            assert not authorize("bia", workspace, action)

    def test_can_edit(self, workspace):
        assert can_edit("ana", workspace)
        assert can_edit("bia", workspace)
        assert not can_edit("caio", workspace)


class TestRequire:
    """Tests for the raising variant."""

    def test_returns_role(self, workspace):
        assert require("bia", workspace, Action.EDIT_EXPENSES) == Role.EDITOR

    def test_denial_names_required_role(self, workspace):
        """A denial carries the role that would have been needed."""
        with pytest.raises(PermissionDenied) as exc_info:
            require("caio", workspace, Action.EDIT_EXPENSES)
        assert exc_info.value.required_role == Role.EDITOR
        assert exc_info.value.actor_role == Role.VIEWER

    def test_denial_for_non_member(self, workspace):
        with pytest.raises(PermissionDenied) as exc_info:
            require("davi", workspace, Action.READ)
        assert exc_info.value.actor_role is None
        assert "no role" in str(exc_info.value)


class TestMutationActions:
    """Tests for mapping writes to actions."""

    def test_entity_writes(self):
        assert action_for_mutation(EntityType.DESPESA) == Action.EDIT_EXPENSES
        assert action_for_mutation(EntityType.COMPRA) == Action.EDIT_PURCHASES
        assert action_for_mutation(EntityType.MONTH) == Action.EDIT_BALANCE

    def test_workspace_delete(self):
        assert action_for_mutation(EntityType.WORKSPACE, deleting=True) == Action.DELETE_WORKSPACE
        assert action_for_mutation(EntityType.WORKSPACE) == Action.MANAGE_MEMBERS


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
