"""
Tests for the ledger operations of the Sync Coordinator.

These run without a remote backend: every write stays in the local cache
and the push queue, which is exactly what a user sees while offline.
"""

import asyncio
from decimal import Decimal

import pytest

from conftest import EDITOR, OUTSIDER, OWNER, VIEWER, TopicRecorder, shared_workspace
from my_pocket.events import Topic
from my_pocket.ledger.installments import InvalidInstallmentRange
from my_pocket.models.audit import AuditEventType
from my_pocket.models.ledger import Compra, Despesa, EntityType, Role, TemplateKind
from my_pocket.models.sync import MutationOp, MutationOrigin, SyncState
from my_pocket.permissions import PermissionDenied
from my_pocket.services.storage import InMemoryCacheStore
from my_pocket.sync import EntityNotFound, InvalidStateTransition, WorkspaceNotFound
from my_pocket.validation import ValidationError


class TestWorkspaces:
    """Tests for workspace and membership operations."""

    def test_create_workspace_makes_actor_owner(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await coordinator.create_workspace(OWNER, "  Casa da Ana ", email="ana@example.com")
            return coordinator, workspace

        coordinator, workspace = asyncio.run(scenario())

        assert workspace.name == "Casa da Ana"
        assert workspace.role_of(OWNER) == Role.OWNER
        assert coordinator.status(workspace.id).pending == 1
        assert coordinator.status(workspace.id).online is False

    def test_short_name_is_rejected(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            with pytest.raises(ValidationError) as exc_info:
                await coordinator.create_workspace(OWNER, "ab")
            return coordinator, exc_info.value

        coordinator, error = asyncio.run(scenario())

        assert error.field == "name"
        assert coordinator.store.workspaces() == []

    def test_members_and_roles(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)

            with pytest.raises(PermissionDenied):
                await coordinator.add_member(EDITOR, workspace.id, OUTSIDER, "viewer")
            with pytest.raises(ValidationError):
                await coordinator.add_member(OWNER, workspace.id, OUTSIDER, "owner")
            with pytest.raises(ValidationError):
                await coordinator.add_member(OWNER, workspace.id, EDITOR, "viewer")
            with pytest.raises(ValidationError):
                await coordinator.remove_member(OWNER, workspace.id, OWNER)
            with pytest.raises(ValidationError):
                await coordinator.change_member_role(OWNER, workspace.id, OWNER, "editor")

            promoted = await coordinator.change_member_role(OWNER, workspace.id, VIEWER, Role.EDITOR)
            removed = await coordinator.remove_member(OWNER, workspace.id, EDITOR)
            return promoted, removed

        promoted, removed = asyncio.run(scenario())

        assert promoted.role_of(VIEWER) == Role.EDITOR
        assert removed.role_of(EDITOR) is None
        assert removed.role_of(VIEWER) == Role.EDITOR

    def test_unknown_role_is_a_validation_error(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            with pytest.raises(ValidationError) as added:
                await coordinator.add_member(OWNER, workspace.id, OUTSIDER, "admin")
            with pytest.raises(ValidationError) as changed:
                await coordinator.change_member_role(OWNER, workspace.id, VIEWER, "superuser")
            unchanged = await coordinator.get_workspace(OWNER, workspace.id)
            return coordinator, added.value, changed.value, unchanged

        coordinator, added, changed, unchanged = asyncio.run(scenario())

        assert (added.field, changed.field) == ("role", "role")
        assert unchanged.role_of(OUTSIDER) is None
        assert unchanged.role_of(VIEWER) == Role.VIEWER
        failed = coordinator.audit_logger.recent(event_type=AuditEventType.VALIDATION_FAILED)
        assert [event.details["field"] for event in failed] == ["role", "role"]

    def test_rename_is_owner_only(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            with pytest.raises(PermissionDenied) as exc_info:
                await coordinator.rename_workspace(EDITOR, workspace.id, "Casa Nova")
            renamed = await coordinator.rename_workspace(OWNER, workspace.id, "Casa Nova")
            return exc_info.value, renamed

        denied, renamed = asyncio.run(scenario())

        assert denied.required_role == Role.OWNER
        assert renamed.name == "Casa Nova"

    def test_listing_is_membership_scoped(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.create_workspace(OUTSIDER, "Outra Casa")
            mine = await coordinator.list_workspaces(VIEWER)
            with pytest.raises(PermissionDenied):
                await coordinator.get_workspace(OUTSIDER, workspace.id)
            with pytest.raises(WorkspaceNotFound):
                await coordinator.get_workspace(OWNER, "missing")
            return workspace, mine

        workspace, mine = asyncio.run(scenario())

        assert [w.id for w in mine] == [workspace.id]

    def test_delete_workspace_removes_local_data(self, make_coordinator):
        async def scenario():
            cache = InMemoryCacheStore()
            coordinator = make_coordinator(cache=cache)
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.add_despesa(EDITOR, workspace.id, "2025-10", "Aluguel", "1500")

            with pytest.raises(PermissionDenied):
                await coordinator.delete_workspace(EDITOR, workspace.id)
            await coordinator.delete_workspace(OWNER, workspace.id)

            with pytest.raises(WorkspaceNotFound):
                await coordinator.open_month(OWNER, workspace.id, "2025-10")
            return coordinator, cache, workspace

        coordinator, cache, workspace = asyncio.run(scenario())

        assert coordinator.store.workspaces() == []
        assert cache.scan(workspace.id, "despesa") == []
        # Only the delete itself waits to be pushed
        pending = coordinator._session(workspace.id).queue.pending()
        assert [(m.op, m.ref.entity_type) for m in pending] == [(MutationOp.DELETE, EntityType.WORKSPACE)]


class TestPermissions:
    """A denied request changes nothing."""

    def test_viewer_write_is_denied_without_side_effects(self, make_coordinator):
        async def scenario():
            cache = InMemoryCacheStore()
            coordinator = make_coordinator(cache=cache)
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.open_month(OWNER, workspace.id, "2025-10")
            pending_before = coordinator.status(workspace.id).pending
            recorder = TopicRecorder(coordinator.bus)

            with pytest.raises(PermissionDenied) as exc_info:
                await coordinator.add_despesa(VIEWER, workspace.id, "2025-10", "Luz", "80")
            with pytest.raises(PermissionDenied):
                await coordinator.update_saldo_inicial(VIEWER, workspace.id, "2025-10", "100")

            return coordinator, cache, workspace, pending_before, recorder, exc_info.value

        coordinator, cache, workspace, pending_before, recorder, error = asyncio.run(scenario())

        assert error.required_role == Role.EDITOR
        assert error.actor_role == Role.VIEWER
        assert cache.scan(workspace.id, "despesa") == []
        assert coordinator.status(workspace.id).pending == pending_before
        assert recorder.topics == []
        denied = coordinator.audit_logger.recent(event_type=AuditEventType.PERMISSION_DENIED)
        assert len(denied) == 2

    def test_viewer_can_read(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.add_despesa(EDITOR, workspace.id, "2025-10", "Luz", "80")
            totals = await coordinator.open_month(VIEWER, workspace.id, "2025-10")
            despesas = await coordinator.list_despesas(VIEWER, workspace.id, "2025-10")
            return totals, despesas

        totals, despesas = asyncio.run(scenario())

        assert totals.total_despesas == Decimal("80.00")
        assert [d.nome for d in despesas] == ["Luz"]

    def test_viewer_opening_a_month_keeps_it_local(self, make_coordinator):
        """A month a viewer materializes is never queued for push."""
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            pending_before = coordinator.status(workspace.id).pending
            await coordinator.open_month(VIEWER, workspace.id, "2025-12")
            return coordinator, workspace, pending_before

        coordinator, workspace, pending_before = asyncio.run(scenario())

        assert coordinator.store.month(workspace.id, "2025-12") is not None
        assert coordinator.status(workspace.id).pending == pending_before


class TestMonths:
    """Tests for lazy months and opening balances."""

    def test_open_month_materializes_once(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            unopened = await coordinator.month_totals(OWNER, workspace.id, "2025-10")
            months_before = await coordinator.list_months(OWNER, workspace.id)
            await coordinator.open_month(OWNER, workspace.id, "2025-10")
            await coordinator.open_month(OWNER, workspace.id, "2025-10")
            months_after = await coordinator.list_months(OWNER, workspace.id)
            return coordinator, workspace, unopened, months_before, months_after

        coordinator, workspace, unopened, months_before, months_after = asyncio.run(scenario())

        assert unopened.sobra == Decimal("0.00")
        assert months_before == []
        assert [month.id for month in months_after] == ["2025-10"]
        queued_months = [
            m for m in coordinator._session(workspace.id).queue.pending()
            if m.ref.entity_type == EntityType.MONTH
        ]
        assert len(queued_months) == 1
        assert queued_months[0].origin == MutationOrigin.SYSTEM

    def test_invalid_month_id(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            with pytest.raises(ValidationError):
                await coordinator.open_month(OWNER, workspace.id, "2025-13")

        asyncio.run(scenario())

    def test_rollover_and_override(self, make_coordinator):
        """
        October's sobra opens November until November's balance is set by hand;
        resetting makes November follow October again.
        """
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id

            await coordinator.update_saldo_inicial(OWNER, ws, "2025-10", "2500+2500")
            await coordinator.add_despesa(OWNER, ws, "2025-10", "Aluguel", "1000")
            november = await coordinator.open_month(OWNER, ws, "2025-11")

            await coordinator.add_despesa(OWNER, ws, "2025-10", "Mercado", "500")
            propagated = await coordinator.month_totals(OWNER, ws, "2025-11")

            await coordinator.update_saldo_inicial(EDITOR, ws, "2025-11", "3000")
            await coordinator.add_despesa(OWNER, ws, "2025-10", "Farmácia", "100")
            pinned = await coordinator.month_totals(OWNER, ws, "2025-11")

            reset = await coordinator.reset_saldo_inicial(OWNER, ws, "2025-11")
            return november, propagated, pinned, reset

        november, propagated, pinned, reset = asyncio.run(scenario())

        assert november.saldo_inicial == Decimal("4000.00")
        assert propagated.saldo_inicial == Decimal("3500.00")
        assert pinned.saldo_inicial == Decimal("3000.00")
        assert pinned.saldo_inicial_override is True
        assert reset.saldo_inicial == Decimal("3400.00")
        assert reset.saldo_inicial_override is False

    def test_negative_sobra_rolls_over(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.update_saldo_inicial(OWNER, workspace.id, "2025-10", "100")
            await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Conserto", "250")
            return await coordinator.open_month(OWNER, workspace.id, "2025-11")

        november = asyncio.run(scenario())

        assert november.saldo_inicial == Decimal("-150.00")


class TestDespesas:
    """Tests for planned expenses."""

    def test_lifecycle(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            await coordinator.update_saldo_inicial(OWNER, ws, "2025-10", "3000")

            despesa = await coordinator.add_despesa(EDITOR, ws, "2025-10", "Aluguel", "1.500,00", categoria="casa")
            paid = await coordinator.update_despesa(EDITOR, ws, despesa.id, pago=True)
            after_pay = await coordinator.month_totals(OWNER, ws, "2025-10")
            await coordinator.delete_despesa(EDITOR, ws, despesa.id)
            after_delete = await coordinator.month_totals(OWNER, ws, "2025-10")
            return despesa, paid, after_pay, after_delete

        despesa, paid, after_pay, after_delete = asyncio.run(scenario())

        assert despesa.valor_planejado == Decimal("1500.00")
        assert despesa.formula == "1.500,00"
        assert paid.pago is True
        assert after_pay.total_despesas_pagas == Decimal("1500.00")
        assert after_pay.sobra == Decimal("1500.00")
        assert after_delete.total_despesas == Decimal("0.00")
        assert after_delete.sobra == Decimal("3000.00")

    def test_invalid_amount_is_audited_and_not_queued(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.open_month(OWNER, workspace.id, "2025-10")
            pending_before = coordinator.status(workspace.id).pending
            with pytest.raises(ValidationError) as exc_info:
                await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Luz", "80 +")
            return coordinator, workspace, pending_before, exc_info.value

        coordinator, workspace, pending_before, error = asyncio.run(scenario())

        assert error.field == "valor_planejado"
        assert coordinator.status(workspace.id).pending == pending_before
        failed = coordinator.audit_logger.recent(event_type=AuditEventType.VALIDATION_FAILED)
        assert failed[0].details["field"] == "valor_planejado"

    def test_unknown_despesa(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            with pytest.raises(EntityNotFound):
                await coordinator.update_despesa(OWNER, workspace.id, "missing", pago=True)

        asyncio.run(scenario())


class TestCardsAndPurchases:
    """Tests for cards, purchases and installments."""

    def test_installments_spread_over_months(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            await coordinator.open_month(OWNER, ws, "2025-10")
            cartao = await coordinator.add_cartao(EDITOR, ws, "Nubank", 5, limite_total="5000")
            compra = await coordinator.add_compra(
                EDITOR, ws, cartao.id, "Notebook", "100", "2025-10", parcelas_total=3,
            )
            november = await coordinator.open_month(OWNER, ws, "2025-11")
            slices = await coordinator.installments_for_month(VIEWER, ws, "2025-12")
            return cartao, compra, november, slices

        cartao, compra, november, slices = asyncio.run(scenario())

        assert november.total_cartoes == Decimal("33.33")
        assert november.faturas == {cartao.id: Decimal("33.33")}
        assert len(slices) == 1
        found, installment = slices[0]
        assert found.id == compra.id
        assert (installment.index, installment.amount) == (3, Decimal("33.34"))

    def test_editing_a_purchase_recomputes_every_month_it_touched(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            for month_id in ["2025-10", "2025-11", "2025-12"]:
                await coordinator.open_month(OWNER, ws, month_id)
            cartao = await coordinator.add_cartao(OWNER, ws, "Nubank", 5)
            compra = await coordinator.add_compra(OWNER, ws, cartao.id, "TV", "300", "2025-10", parcelas_total=3)
            await coordinator.update_compra(OWNER, ws, compra.id, parcelas_total=1)
            return [await coordinator.month_totals(OWNER, ws, m) for m in ["2025-10", "2025-11", "2025-12"]]

        totals = asyncio.run(scenario())

        assert [t.total_cartoes for t in totals] == [Decimal("300.00"), Decimal("0.00"), Decimal("0.00")]
        assert [t.saldo_inicial for t in totals] == [Decimal("0.00"), Decimal("-300.00"), Decimal("-300.00")]

    def test_invalid_installment_range(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            cartao = await coordinator.add_cartao(OWNER, workspace.id, "Nubank", 5)
            with pytest.raises(InvalidInstallmentRange):
                await coordinator.add_compra(
                    OWNER, workspace.id, cartao.id, "TV", "300", "2025-10",
                    parcelas_total=3, parcela_atual=4,
                )
            return coordinator, workspace

        coordinator, workspace = asyncio.run(scenario())

        assert coordinator.store.compras(workspace.id) == []
        failed = coordinator.audit_logger.recent(event_type=AuditEventType.VALIDATION_FAILED)
        assert len(failed) == 1

    def test_purchase_needs_existing_card(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            with pytest.raises(EntityNotFound):
                await coordinator.add_compra(OWNER, workspace.id, "missing", "TV", "300", "2025-10")

        asyncio.run(scenario())

    def test_delete_cartao_cascades_to_purchases(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            for month_id in ["2025-10", "2025-11", "2025-12"]:
                await coordinator.open_month(OWNER, ws, month_id)
            cartao = await coordinator.add_cartao(OWNER, ws, "Nubank", 5)
            other = await coordinator.add_cartao(OWNER, ws, "Inter", 10)
            await coordinator.add_compra(OWNER, ws, cartao.id, "TV", "300", "2025-10", parcelas_total=3)
            await coordinator.add_compra(OWNER, ws, cartao.id, "Livro", "50", "2025-11")
            kept = await coordinator.add_compra(OWNER, ws, other.id, "Sapato", "90", "2025-10")

            recorder = TopicRecorder(coordinator.bus)
            removed = await coordinator.delete_cartao(OWNER, ws, cartao.id)
            totals = [await coordinator.month_totals(OWNER, ws, m) for m in ["2025-10", "2025-11", "2025-12"]]
            compras = await coordinator.list_compras(OWNER, ws)
            cartoes = await coordinator.list_cartoes(OWNER, ws)
            return removed, totals, compras, cartoes, kept, other, recorder

        removed, totals, compras, cartoes, kept, other, recorder = asyncio.run(scenario())

        assert removed == 2
        assert [c.id for c in compras] == [kept.id]
        assert [c.id for c in cartoes] == [other.id]
        assert [t.total_cartoes for t in totals] == [Decimal("90.00"), Decimal("0.00"), Decimal("0.00")]
        assert recorder.count(Topic.MONTHS) == 1
        assert recorder.count(Topic.PURCHASES) == 1
        assert recorder.count(Topic.CARDS) == 1


class TestChangeNotifications:
    """Subscribers hear about each collection once per operation."""

    def test_one_months_changed_per_operation(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            for month_id in ["2025-10", "2025-11", "2025-12"]:
                await coordinator.open_month(OWNER, ws, month_id)
            cartao = await coordinator.add_cartao(OWNER, ws, "Nubank", 5)

            recorder = TopicRecorder(coordinator.bus)
            await coordinator.add_compra(OWNER, ws, cartao.id, "Geladeira", "3000", "2025-10", parcelas_total=3)
            return recorder

        recorder = asyncio.run(scenario())

        assert recorder.topics == [Topic.PURCHASES, Topic.MONTHS]

    def test_batch_groups_several_operations(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.open_month(OWNER, workspace.id, "2025-10")

            recorder = TopicRecorder(coordinator.bus)
            with coordinator.batch():
                await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Luz", "80")
                await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Água", "60")
                assert recorder.topics == []
            return recorder

        recorder = asyncio.run(scenario())

        assert recorder.topics == [Topic.EXPENSES, Topic.MONTHS]

    def test_subscribers_see_the_pending_write(self, make_coordinator):
        """By the time subscribers run, the write is both applied and queued."""
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            await coordinator.open_month(OWNER, workspace.id, "2025-10")
            seen = []

            def on_expenses(topic):
                despesas = coordinator.store.despesas(workspace.id, "2025-10")
                seen.append([(d.nome, coordinator.is_pending(d.ref)) for d in despesas])

            coordinator.bus.subscribe(Topic.EXPENSES, on_expenses)
            await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Luz", "80")
            return seen

        assert asyncio.run(scenario()) == [[("Luz", True)]]

    def test_failing_subscriber_does_not_break_the_write(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)

            def broken(topic):
                raise RuntimeError("widget crashed")

            coordinator.bus.subscribe(Topic.EXPENSES, broken)
            despesa = await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Luz", "80")
            return coordinator, despesa

        coordinator, despesa = asyncio.run(scenario())

        assert coordinator.store.has(despesa.ref)


class TestTemplates:
    """Tests for recurring templates."""

    def test_templates_instantiate_into_existing_and_new_months(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            await coordinator.open_month(OWNER, ws, "2025-10")
            cartao = await coordinator.add_cartao(OWNER, ws, "Nubank", 5)

            await coordinator.create_template(OWNER, ws, "expense", "Academia", "120", "2025-10")
            await coordinator.create_template(
                OWNER, ws, TemplateKind.CARD_PURCHASE, "Streaming", "39,90", "2025-10", cartao_id=cartao.id,
            )
            october = await coordinator.month_totals(OWNER, ws, "2025-10")
            november = await coordinator.open_month(OWNER, ws, "2025-11")
            await coordinator.open_month(OWNER, ws, "2025-11")
            despesas = await coordinator.list_despesas(OWNER, ws, "2025-11")
            compras = await coordinator.list_compras(OWNER, ws, cartao.id)
            return october, november, despesas, compras

        october, november, despesas, compras = asyncio.run(scenario())

        assert october.total_despesas == Decimal("120.00")
        assert october.total_cartoes == Decimal("39.90")
        assert november.total_despesas == Decimal("120.00")
        assert november.total_cartoes == Decimal("39.90")
        assert [d.nome for d in despesas] == ["Academia"]
        assert isinstance(despesas[0], Despesa) and despesas[0].template_id
        assert sorted(c.mes_ancora for c in compras) == ["2025-10", "2025-11"]
        assert all(isinstance(c, Compra) and c.parcelas_total == 1 for c in compras)

    def test_card_template_needs_card(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            with pytest.raises(ValidationError):
                await coordinator.create_template(OWNER, workspace.id, "card_purchase", "Streaming", "39.90", "2025-10")
            with pytest.raises(EntityNotFound):
                await coordinator.create_template(
                    OWNER, workspace.id, "card_purchase", "Streaming", "39.90", "2025-10", cartao_id="missing",
                )

        asyncio.run(scenario())

    def test_delete_template_keeps_earlier_instances(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            for month_id in ["2025-10", "2025-11", "2025-12"]:
                await coordinator.open_month(OWNER, ws, month_id)
            template = await coordinator.create_template(OWNER, ws, "expense", "Academia", "120", "2025-10")

            removed = await coordinator.delete_template(OWNER, ws, template.id, "2025-11")
            remaining = await coordinator.list_templates(OWNER, ws)
            despesas = coordinator.store.despesas(ws)
            december = await coordinator.month_totals(OWNER, ws, "2025-12")
            return removed, remaining, despesas, december

        removed, remaining, despesas, december = asyncio.run(scenario())

        assert removed == 2
        assert remaining == []
        assert [d.month_id for d in despesas] == ["2025-10"]
        assert december.total_despesas == Decimal("0.00")

    def test_pausing_a_card_template_removes_future_instances(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            for month_id in ["2025-10", "2025-11"]:
                await coordinator.open_month(OWNER, ws, month_id)
            cartao = await coordinator.add_cartao(OWNER, ws, "Nubank", 5)
            template = await coordinator.create_template(
                OWNER, ws, "card_purchase", "Streaming", "39.90", "2025-10", cartao_id=cartao.id,
            )

            paused = await coordinator.toggle_template(OWNER, ws, template.id, False, "2025-10")
            after_pause = sorted(c.mes_ancora for c in coordinator.store.compras(ws))
            opened_while_paused = await coordinator.open_month(OWNER, ws, "2025-12")

            await coordinator.toggle_template(OWNER, ws, template.id, True, "2025-10")
            after_resume = sorted(c.mes_ancora for c in coordinator.store.compras(ws))
            return paused, after_pause, opened_while_paused, after_resume

        paused, after_pause, opened_while_paused, after_resume = asyncio.run(scenario())

        assert paused.active is False
        assert after_pause == ["2025-10"]
        assert opened_while_paused.total_cartoes == Decimal("0.00")
        assert after_resume == ["2025-10", "2025-11", "2025-12"]

    def test_update_template_applies_to_new_months_only(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            ws = workspace.id
            await coordinator.open_month(OWNER, ws, "2025-10")
            template = await coordinator.create_template(OWNER, ws, "expense", "Academia", "120", "2025-10")
            await coordinator.update_template(OWNER, ws, template.id, valor="150")
            october = await coordinator.month_totals(OWNER, ws, "2025-10")
            november = await coordinator.open_month(OWNER, ws, "2025-11")
            return october, november

        october, november = asyncio.run(scenario())

        assert october.total_despesas == Decimal("120.00")
        assert november.total_despesas == Decimal("150.00")


class TestSyncState:
    """Tests for the sync state machine outside of passes."""

    def test_offline_status(self, make_coordinator):
        async def scenario():
            coordinator = make_coordinator()
            await coordinator.start()
            workspace = await shared_workspace(coordinator)
            despesa = await coordinator.add_despesa(OWNER, workspace.id, "2025-10", "Luz", "80")
            return coordinator, workspace, despesa

        coordinator, workspace, despesa = asyncio.run(scenario())

        status = coordinator.status(workspace.id)
        assert status.state == SyncState.IDLE
        assert status.online is False
        # three workspace writes, the month and the expense
        assert status.pending == 5
        assert coordinator.is_pending(despesa.ref)

    def test_illegal_transition_raises(self, make_coordinator):
        coordinator = make_coordinator()
        session = coordinator._session("w1")
        with pytest.raises(InvalidStateTransition):
            coordinator._transition(session, SyncState.ERROR)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
