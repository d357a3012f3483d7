"""
Sync Coordinator

The single entry point the UI talks to: every read and every write of
ledger data goes through here.

Control flow of a write:
1. Permission Guard authorizes the actor (before anything else)
2. Input is validated
3. The entity store changes and is written through to the local cache
4. Affected months are recomputed with forward rollover
5. Subscribers are notified, once per topic for the whole operation
6. The write is queued and a background pass pushes it to the remote

DESIGN DECISION: Reads are served from the entity store only and never
wait on the network. Months are materialized lazily: the first time a
month is opened it is created with the previous month's sobra as opening
balance and gets the instances of every recurring template that applies.

CRITICAL: Only editors push lazily created months and template instances.
A viewer opening a month keeps it local; an editor's copy (with the same
deterministic ids for template instances) arrives through the change
stream.
"""

from contextlib import contextmanager
from datetime import date
from typing import Callable, Iterable, Iterator, Optional, Union

import structlog

from my_pocket.audit.logger import AuditLogger
from my_pocket.config.settings import SyncSettings
from my_pocket.events.bus import ChangeEventBus, Topic
from my_pocket.ledger.installments import InvalidInstallmentRange, active_installment
from my_pocket.ledger.templates import applies_in_month, instance_ref, instantiate
from my_pocket.models.ledger import (
    Cartao,
    Compra,
    Despesa,
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
    utc_now,
)
from my_pocket.models.sync import MutationOp, MutationOrigin
from my_pocket.permissions.guard import Action, PermissionDenied, can_edit, require
from my_pocket.services.remote.interface import RemoteBackend
from my_pocket.services.storage.interface import LocalCacheStore
from my_pocket.store import EntityStore
from my_pocket.sync.engine import ENTITY_TOPICS, SyncEngine, WorkspaceSession
from my_pocket.validation.validator import AmountInput, LedgerValidator, ValidationError


logger = structlog.get_logger(__name__)


class WorkspaceNotFound(LookupError):
    """No workspace with this id exists locally."""

    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Workspace not found: {workspace_id}")


class EntityNotFound(LookupError):
    """No entity of this type and id exists in the workspace."""

    def __init__(self, entity_type: EntityType, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.value} not found: {entity_id}")


def _instance_month(entity: LedgerEntity) -> str:
    if isinstance(entity, Despesa):
        return entity.month_id
    return entity.mes_ancora


def _member_role(role: Union[Role, str]) -> Role:
    try:
        new_role = Role(role)
    except ValueError:
        raise ValidationError("role", f"{role!r} is not a valid role") from None
    if new_role == Role.OWNER:
        raise ValidationError("role", "the owner role cannot be granted")
    return new_role


class SyncCoordinator(SyncEngine):
    """
    Actor-scoped ledger operations over the local replica.

    Every operation takes the acting user's id first and checks their role
    in the workspace before touching anything.
    """

    def __init__(
        self,
        cache: LocalCacheStore,
        remote: Optional[RemoteBackend],
        bus: ChangeEventBus,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
        store: Optional[EntityStore] = None,
        validator: Optional[LedgerValidator] = None,
        online: Optional[bool] = None,
    ):
        super().__init__(cache, remote, bus, audit_logger, settings, store, online)
        self._validator = validator or LedgerValidator()

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several operations so subscribers hear about them once."""
        with self._bus.batch():
            yield

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _workspace(self, workspace_id: str) -> Workspace:
        workspace = self._store.workspace(workspace_id)
        if workspace is None:
            raise WorkspaceNotFound(workspace_id)
        return workspace

    def _open(self, workspace_id: str) -> WorkspaceSession:
        self._workspace(workspace_id)
        return self._session(workspace_id)

    def _entity(self, workspace_id: str, entity_type: EntityType, entity_id: Optional[str]) -> LedgerEntity:
        entity = self._store.get(entity_type, workspace_id, entity_id or "")
        if entity is None:
            raise EntityNotFound(entity_type, entity_id or "")
        return entity

    def _authorize(self, actor_id: str, workspace: Workspace, action: Action) -> Role:
        try:
            return require(actor_id, workspace, action)
        except PermissionDenied as e:
            self._audit.log_permission_denied(
                workspace.id, actor_id, action.value, e.required_role.value,
            )
            raise

    @contextmanager
    def _validating(self, workspace_id: str, entity_type: EntityType) -> Iterator[None]:
        try:
            yield
        except ValidationError as e:
            self._audit.log_validation_failed(workspace_id, entity_type.value, e.field, e.reason)
            raise
        except InvalidInstallmentRange as e:
            self._audit.log_validation_failed(workspace_id, entity_type.value, "parcela_atual", str(e))
            raise

    def _apply_local(
        self,
        session: WorkspaceSession,
        actor_id: str,
        entity: LedgerEntity,
        op: MutationOp,
        touched: Iterable[str] = (),
    ) -> None:
        """Write (or erase), queue, publish and recompute ``touched`` months."""
        if op == MutationOp.DELETE:
            self._erase(entity.ref)
        else:
            self._write(entity)
        self._stage(session, op, entity, actor_id)
        self._bus.publish(ENTITY_TOPICS[entity.entity_type])
        self._recompute(entity.workspace_id, touched)
        self._audit.log_mutation_applied(entity.ref, op.value, actor_id)

    def _schedule(self, session: WorkspaceSession) -> None:
        self.request_reconcile(session.workspace_id)

    def _ensure_month(
        self,
        session: WorkspaceSession,
        actor_id: str,
        workspace: Workspace,
        month_id: str,
    ) -> Month:
        """Return the month, materializing it (and its template instances) if needed."""
        month = self._store.month(workspace.id, month_id)
        if month is not None:
            return month

        pusher = actor_id if can_edit(actor_id, workspace) else None
        month = self._write(self._aggregator.new_month(workspace.id, month_id))
        if pusher is not None:
            self._stage(session, MutationOp.UPSERT, month, pusher, MutationOrigin.SYSTEM)
        self._audit.log_month_materialized(workspace.id, month_id, str(month.saldo_inicial))

        for template in self._store.templates(workspace.id):
            self._materialize_instance(session, pusher, template, month_id)
        self._recompute(workspace.id, [month_id])
        return self._store.month(workspace.id, month_id)

    def _materialize_instance(
        self,
        session: WorkspaceSession,
        pusher: Optional[str],
        template: RecurringTemplate,
        month_id: str,
    ) -> Optional[LedgerEntity]:
        if not applies_in_month(template, month_id):
            return None
        if self._store.has(instance_ref(template, month_id)):
            return None
        if template.kind == TemplateKind.CARD_PURCHASE and self._store.get(
            EntityType.CARTAO, template.workspace_id, template.cartao_id or ""
        ) is None:
            return None

        entity = self._write(instantiate(template, month_id))
        if pusher is not None:
            self._stage(session, MutationOp.UPSERT, entity, pusher, MutationOrigin.SYSTEM)
        self._bus.publish(ENTITY_TOPICS[entity.entity_type])
        return entity

    def _template_instances(self, workspace_id: str, template_id: str) -> list[LedgerEntity]:
        instances: list[LedgerEntity] = [
            despesa for despesa in self._store.despesas(workspace_id)
            if despesa.template_id == template_id
        ]
        instances.extend(
            compra for compra in self._store.compras(workspace_id)
            if compra.template_id == template_id
        )
        return instances

    def _month_id(self, workspace_id: str, entity_type: EntityType, value: str, field: str) -> str:
        with self._validating(workspace_id, entity_type):
            return self._validator.month_id(value, field)

    # =========================================================================
    # WORKSPACES
    # =========================================================================

    async def create_workspace(
        self,
        actor_id: str,
        name: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Workspace:
        """Create a workspace owned by ``actor_id``."""
        with self._validating("", EntityType.WORKSPACE):
            workspace = self._validator.build(Workspace, {
                "name": name,
                "owner_id": actor_id,
                "members": [{
                    "user_id": actor_id,
                    "role": Role.OWNER,
                    "email": email,
                    "display_name": display_name,
                }],
            })

        session = self._session(workspace.id)
        async with session.lock:
            with self._bus.batch():
                self._apply_local(session, actor_id, workspace, MutationOp.UPSERT)
        logger.info("workspace_created", workspace_id=workspace.id, owner_id=actor_id)
        self._schedule(session)
        return workspace

    async def _change_workspace(
        self,
        actor_id: str,
        workspace_id: str,
        action: Action,
        edit: Callable[[Workspace], dict],
    ) -> Workspace:
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, action)
            with self._validating(workspace_id, EntityType.WORKSPACE):
                changes = edit(workspace)
                changes["updated_at"] = utc_now()
                updated = self._validator.update(workspace, changes)
            with self._bus.batch():
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT)
        self._schedule(session)
        return updated

    async def rename_workspace(self, actor_id: str, workspace_id: str, name: str) -> Workspace:
        return await self._change_workspace(
            actor_id, workspace_id, Action.RENAME_WORKSPACE, lambda workspace: {"name": name},
        )

    async def add_member(
        self,
        actor_id: str,
        workspace_id: str,
        user_id: str,
        role: Union[Role, str],
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Workspace:
        """Add an editor or viewer (owner only)."""
        def edit(workspace: Workspace) -> dict:
            new_role = _member_role(role)
            if workspace.member(user_id) is not None:
                raise ValidationError("user_id", f"{user_id} is already a member")
            members = [member.model_dump() for member in workspace.members]
            members.append({
                "user_id": user_id,
                "role": new_role,
                "email": email,
                "display_name": display_name,
            })
            return {"members": members}

        return await self._change_workspace(actor_id, workspace_id, Action.MANAGE_MEMBERS, edit)

    async def remove_member(self, actor_id: str, workspace_id: str, user_id: str) -> Workspace:
        """Remove a member (owner only). The owner cannot be removed."""
        def edit(workspace: Workspace) -> dict:
            if user_id == workspace.owner_id:
                raise ValidationError("user_id", "the owner cannot be removed")
            if workspace.member(user_id) is None:
                raise ValidationError("user_id", f"{user_id} is not a member")
            return {"members": [
                member.model_dump() for member in workspace.members
                if member.user_id != user_id
            ]}

        return await self._change_workspace(actor_id, workspace_id, Action.MANAGE_MEMBERS, edit)

    async def change_member_role(
        self,
        actor_id: str,
        workspace_id: str,
        user_id: str,
        role: Union[Role, str],
    ) -> Workspace:
        """Switch a member between editor and viewer (owner only)."""
        def edit(workspace: Workspace) -> dict:
            new_role = _member_role(role)
            if user_id == workspace.owner_id:
                raise ValidationError("user_id", "the owner role cannot be revoked")
            if workspace.member(user_id) is None:
                raise ValidationError("user_id", f"{user_id} is not a member")
            members = []
            for member in workspace.members:
                data = member.model_dump()
                if member.user_id == user_id:
                    data["role"] = new_role
                members.append(data)
            return {"members": members}

        return await self._change_workspace(actor_id, workspace_id, Action.MANAGE_MEMBERS, edit)

    async def delete_workspace(self, actor_id: str, workspace_id: str) -> None:
        """
        Delete a workspace and everything in it (owner only).

        Local data goes immediately; queued writes for the workspace are
        dropped and replaced by the single delete.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.DELETE_WORKSPACE)
            with self._bus.batch():
                self._purge_local(session)
                self._stage(session, MutationOp.DELETE, workspace, actor_id)
                for topic in Topic:
                    self._bus.publish(topic)
            self._audit.log_mutation_applied(workspace.ref, MutationOp.DELETE.value, actor_id)
        logger.info("workspace_deleted", workspace_id=workspace_id, actor_id=actor_id)
        self._schedule(session)

    async def list_workspaces(self, actor_id: str) -> list[Workspace]:
        """Workspaces the actor is a member of."""
        return [
            workspace for workspace in self._store.workspaces()
            if workspace.member(actor_id) is not None
        ]

    async def get_workspace(self, actor_id: str, workspace_id: str) -> Workspace:
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        return workspace

    # =========================================================================
    # MONTHS
    # =========================================================================

    async def open_month(self, actor_id: str, workspace_id: str, month_id: str) -> MonthTotals:
        """
        Totals of a month, materializing the month on first access.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.READ)
            month_id = self._month_id(workspace_id, EntityType.MONTH, month_id, "month_id")
            created = self._store.month(workspace_id, month_id) is None
            with self._bus.batch():
                self._ensure_month(session, actor_id, workspace, month_id)
            totals = self._aggregator.totals_for(workspace_id, month_id)
        if created:
            self._schedule(session)
        return totals

    async def month_totals(self, actor_id: str, workspace_id: str, month_id: str) -> MonthTotals:
        """
        Totals of a month without materializing it.

        A month that was never opened reports its would-be opening balance.
        """
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        month_id = self._month_id(workspace_id, EntityType.MONTH, month_id, "month_id")
        month = self._store.month(workspace_id, month_id)
        if month is None:
            month = self._aggregator.new_month(workspace_id, month_id)
        return self._aggregator.compute(month)

    async def list_months(self, actor_id: str, workspace_id: str) -> list[Month]:
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        return self._store.months(workspace_id)

    async def update_saldo_inicial(
        self,
        actor_id: str,
        workspace_id: str,
        month_id: str,
        valor: AmountInput,
    ) -> MonthTotals:
        """
        Set a month's opening balance explicitly.

        The month stops following the previous month's sobra until
        ``reset_saldo_inicial`` is called.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_BALANCE)
            with self._validating(workspace_id, EntityType.MONTH):
                month_id = self._validator.month_id(month_id)
                amount, _ = self._validator.amount(valor, "saldo_inicial")
            with self._bus.batch():
                month = self._ensure_month(session, actor_id, workspace, month_id)
                updated = self._validator.update(month, {
                    "saldo_inicial": amount,
                    "saldo_inicial_override": True,
                    "updated_at": utc_now(),
                })
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT, [month_id])
            totals = self._aggregator.totals_for(workspace_id, month_id)
        self._schedule(session)
        return totals

    async def reset_saldo_inicial(self, actor_id: str, workspace_id: str, month_id: str) -> MonthTotals:
        """Clear the override so the month follows the previous month's sobra again."""
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_BALANCE)
            month_id = self._month_id(workspace_id, EntityType.MONTH, month_id, "month_id")
            with self._bus.batch():
                month = self._ensure_month(session, actor_id, workspace, month_id)
                updated = self._validator.update(month, {
                    "saldo_inicial": self._aggregator.opening_balance(workspace_id, month_id),
                    "saldo_inicial_override": False,
                    "updated_at": utc_now(),
                })
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT, [month_id])
            totals = self._aggregator.totals_for(workspace_id, month_id)
        self._schedule(session)
        return totals

    # =========================================================================
    # DESPESAS
    # =========================================================================

    async def add_despesa(
        self,
        actor_id: str,
        workspace_id: str,
        month_id: str,
        nome: str,
        valor: AmountInput,
        pago: bool = False,
        categoria: Optional[Union[ExpenseCategory, str]] = None,
    ) -> Despesa:
        """Add a planned expense. ``valor`` may be a formula such as "100+50"."""
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_EXPENSES)
            with self._validating(workspace_id, EntityType.DESPESA):
                month_id = self._validator.month_id(month_id)
                amount, formula = self._validator.amount(valor, "valor_planejado")
                despesa = self._validator.build(Despesa, {
                    "workspace_id": workspace_id,
                    "month_id": month_id,
                    "nome": nome,
                    "valor_planejado": amount,
                    "formula": formula,
                    "pago": pago,
                    "categoria": categoria,
                })
            with self._bus.batch():
                self._ensure_month(session, actor_id, workspace, month_id)
                self._apply_local(session, actor_id, despesa, MutationOp.UPSERT, [month_id])
        self._schedule(session)
        return despesa

    async def update_despesa(
        self,
        actor_id: str,
        workspace_id: str,
        despesa_id: str,
        nome: Optional[str] = None,
        valor: Optional[AmountInput] = None,
        pago: Optional[bool] = None,
        categoria: Optional[Union[ExpenseCategory, str]] = None,
    ) -> Despesa:
        """Change an expense. Arguments left as None are kept."""
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_EXPENSES)
            despesa = self._entity(workspace_id, EntityType.DESPESA, despesa_id)
            changes: dict = {"updated_at": utc_now()}
            with self._validating(workspace_id, EntityType.DESPESA):
                if nome is not None:
                    changes["nome"] = nome
                if valor is not None:
                    changes["valor_planejado"], changes["formula"] = self._validator.amount(
                        valor, "valor_planejado"
                    )
                if pago is not None:
                    changes["pago"] = pago
                if categoria is not None:
                    changes["categoria"] = categoria
                updated = self._validator.update(despesa, changes)
            with self._bus.batch():
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT, [updated.month_id])
        self._schedule(session)
        return updated

    async def delete_despesa(self, actor_id: str, workspace_id: str, despesa_id: str) -> None:
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_EXPENSES)
            despesa = self._entity(workspace_id, EntityType.DESPESA, despesa_id)
            with self._bus.batch():
                self._apply_local(session, actor_id, despesa, MutationOp.DELETE, [despesa.month_id])
        self._schedule(session)

    async def list_despesas(self, actor_id: str, workspace_id: str, month_id: str) -> list[Despesa]:
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        month_id = self._month_id(workspace_id, EntityType.DESPESA, month_id, "month_id")
        return self._store.despesas(workspace_id, month_id)

    # =========================================================================
    # CARTOES
    # =========================================================================

    async def add_cartao(
        self,
        actor_id: str,
        workspace_id: str,
        nome: str,
        dia_fechamento: int,
        limite_total: AmountInput = 0,
    ) -> Cartao:
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_CARDS)
            with self._validating(workspace_id, EntityType.CARTAO):
                limite, _ = self._validator.amount(limite_total, "limite_total")
                cartao = self._validator.build(Cartao, {
                    "workspace_id": workspace_id,
                    "nome": nome,
                    "dia_fechamento": dia_fechamento,
                    "limite_total": limite,
                })
            with self._bus.batch():
                self._apply_local(session, actor_id, cartao, MutationOp.UPSERT)
        self._schedule(session)
        return cartao

    async def update_cartao(
        self,
        actor_id: str,
        workspace_id: str,
        cartao_id: str,
        nome: Optional[str] = None,
        dia_fechamento: Optional[int] = None,
        limite_total: Optional[AmountInput] = None,
    ) -> Cartao:
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_CARDS)
            cartao = self._entity(workspace_id, EntityType.CARTAO, cartao_id)
            changes: dict = {"updated_at": utc_now()}
            with self._validating(workspace_id, EntityType.CARTAO):
                if nome is not None:
                    changes["nome"] = nome
                if dia_fechamento is not None:
                    changes["dia_fechamento"] = dia_fechamento
                if limite_total is not None:
                    changes["limite_total"], _ = self._validator.amount(limite_total, "limite_total")
                updated = self._validator.update(cartao, changes)
            with self._bus.batch():
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT)
        self._schedule(session)
        return updated

    async def delete_cartao(self, actor_id: str, workspace_id: str, cartao_id: str) -> int:
        """
        Delete a card and every purchase on it.

        Returns the number of purchases removed.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_CARDS)
            cartao = self._entity(workspace_id, EntityType.CARTAO, cartao_id)
            compras = self._store.compras(workspace_id, cartao_id)
            touched = self._months_touched(cartao)
            with self._bus.batch():
                for compra in compras:
                    self._apply_local(session, actor_id, compra, MutationOp.DELETE)
                self._apply_local(session, actor_id, cartao, MutationOp.DELETE, touched)
        self._schedule(session)
        return len(compras)

    async def list_cartoes(self, actor_id: str, workspace_id: str) -> list[Cartao]:
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        return self._store.cartoes(workspace_id)

    # =========================================================================
    # COMPRAS
    # =========================================================================

    async def add_compra(
        self,
        actor_id: str,
        workspace_id: str,
        cartao_id: str,
        descricao: str,
        valor_total: AmountInput,
        mes_ancora: str,
        parcelas_total: int = 1,
        parcela_atual: int = 1,
        data_compra: Optional[date] = None,
        marcado: bool = True,
    ) -> Compra:
        """
        Add a card purchase.

        ``mes_ancora`` is the month the purchase is entered against: that
        month carries installment ``parcela_atual``, the following months
        the remaining ones.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_PURCHASES)
            with self._validating(workspace_id, EntityType.COMPRA):
                self._validator.installment_range(parcela_atual, parcelas_total)
                mes_ancora = self._validator.month_id(mes_ancora, "mes_ancora")
                amount, _ = self._validator.amount(valor_total, "valor_total")
                data = {
                    "workspace_id": workspace_id,
                    "cartao_id": cartao_id,
                    "descricao": descricao,
                    "valor_total": amount,
                    "parcela_atual": parcela_atual,
                    "parcelas_total": parcelas_total,
                    "marcado": marcado,
                    "mes_ancora": mes_ancora,
                }
                if data_compra is not None:
                    data["data_compra"] = data_compra
                compra = self._validator.build(Compra, data)
            self._entity(workspace_id, EntityType.CARTAO, cartao_id)
            with self._bus.batch():
                self._ensure_month(session, actor_id, workspace, mes_ancora)
                self._apply_local(
                    session, actor_id, compra, MutationOp.UPSERT, self._months_touched(compra),
                )
        self._schedule(session)
        return compra

    async def update_compra(
        self,
        actor_id: str,
        workspace_id: str,
        compra_id: str,
        descricao: Optional[str] = None,
        valor_total: Optional[AmountInput] = None,
        parcela_atual: Optional[int] = None,
        parcelas_total: Optional[int] = None,
        marcado: Optional[bool] = None,
        data_compra: Optional[date] = None,
    ) -> Compra:
        """Change a purchase; every month it contributed to is recomputed."""
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_PURCHASES)
            compra = self._entity(workspace_id, EntityType.COMPRA, compra_id)
            changes: dict = {"updated_at": utc_now()}
            with self._validating(workspace_id, EntityType.COMPRA):
                atual = parcela_atual if parcela_atual is not None else compra.parcela_atual
                total = parcelas_total if parcelas_total is not None else compra.parcelas_total
                self._validator.installment_range(atual, total)
                changes["parcela_atual"] = atual
                changes["parcelas_total"] = total
                if descricao is not None:
                    changes["descricao"] = descricao
                if valor_total is not None:
                    changes["valor_total"], _ = self._validator.amount(valor_total, "valor_total")
                if marcado is not None:
                    changes["marcado"] = marcado
                if data_compra is not None:
                    changes["data_compra"] = data_compra
                updated = self._validator.update(compra, changes)
            touched = self._months_touched(compra) | self._months_touched(updated)
            with self._bus.batch():
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT, touched)
        self._schedule(session)
        return updated

    async def delete_compra(self, actor_id: str, workspace_id: str, compra_id: str) -> None:
        """Delete a purchase and, with it, all of its installments."""
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_PURCHASES)
            compra = self._entity(workspace_id, EntityType.COMPRA, compra_id)
            touched = self._months_touched(compra)
            with self._bus.batch():
                self._apply_local(session, actor_id, compra, MutationOp.DELETE, touched)
        self._schedule(session)

    async def list_compras(
        self,
        actor_id: str,
        workspace_id: str,
        cartao_id: Optional[str] = None,
    ) -> list[Compra]:
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        return self._store.compras(workspace_id, cartao_id)

    async def installments_for_month(
        self,
        actor_id: str,
        workspace_id: str,
        month_id: str,
    ) -> list[tuple[Compra, InstallmentSlice]]:
        """Purchases with an active installment in the month, with that installment."""
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        month_id = self._month_id(workspace_id, EntityType.COMPRA, month_id, "month_id")
        cartao_ids = {cartao.id for cartao in self._store.cartoes(workspace_id)}
        found = []
        for compra in self._store.compras(workspace_id):
            if compra.cartao_id not in cartao_ids:
                continue
            installment = active_installment(compra, month_id)
            if installment.active:
                found.append((compra, installment))
        return found

    # =========================================================================
    # RECURRING TEMPLATES
    # =========================================================================

    async def create_template(
        self,
        actor_id: str,
        workspace_id: str,
        kind: Union[TemplateKind, str],
        nome: str,
        valor: AmountInput,
        start_month: str,
        frequency: Union[Frequency, str] = Frequency.MENSAL,
        end_month: Optional[str] = None,
        skip_months: Optional[list[int]] = None,
        categoria: Optional[Union[ExpenseCategory, str]] = None,
        cartao_id: Optional[str] = None,
    ) -> RecurringTemplate:
        """
        Create a recurring template and instantiate it in every existing
        month from ``start_month`` on where it applies.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_TEMPLATES)
            with self._validating(workspace_id, EntityType.TEMPLATE):
                start_month = self._validator.month_id(start_month, "start_month")
                if end_month is not None:
                    end_month = self._validator.month_id(end_month, "end_month")
                amount, formula = self._validator.amount(valor, "valor")
                template = self._validator.build(RecurringTemplate, {
                    "workspace_id": workspace_id,
                    "kind": kind,
                    "nome": nome,
                    "valor": amount,
                    "formula": formula,
                    "frequency": frequency,
                    "start_month": start_month,
                    "end_month": end_month,
                    "skip_months": skip_months or [],
                    "categoria": categoria,
                    "cartao_id": cartao_id,
                })
            if template.kind == TemplateKind.CARD_PURCHASE:
                self._entity(workspace_id, EntityType.CARTAO, template.cartao_id)

            with self._bus.batch():
                self._apply_local(session, actor_id, template, MutationOp.UPSERT)
                touched = {
                    month.id for month in self._store.months(workspace_id)
                    if self._materialize_instance(session, actor_id, template, month.id) is not None
                }
                self._recompute(workspace_id, touched)
        self._schedule(session)
        return template

    async def update_template(
        self,
        actor_id: str,
        workspace_id: str,
        template_id: str,
        nome: Optional[str] = None,
        valor: Optional[AmountInput] = None,
        frequency: Optional[Union[Frequency, str]] = None,
        end_month: Optional[str] = None,
        skip_months: Optional[list[int]] = None,
        categoria: Optional[Union[ExpenseCategory, str]] = None,
    ) -> RecurringTemplate:
        """
        Change a template. Instances already created are kept as they are;
        months materialized from now on use the new values.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_TEMPLATES)
            template = self._entity(workspace_id, EntityType.TEMPLATE, template_id)
            changes: dict = {"updated_at": utc_now()}
            with self._validating(workspace_id, EntityType.TEMPLATE):
                if nome is not None:
                    changes["nome"] = nome
                if valor is not None:
                    changes["valor"], changes["formula"] = self._validator.amount(valor, "valor")
                if frequency is not None:
                    changes["frequency"] = frequency
                if end_month is not None:
                    changes["end_month"] = self._validator.month_id(end_month, "end_month")
                if skip_months is not None:
                    changes["skip_months"] = skip_months
                if categoria is not None:
                    changes["categoria"] = categoria
                updated = self._validator.update(template, changes)
            with self._bus.batch():
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT)
        self._schedule(session)
        return updated

    async def delete_template(
        self,
        actor_id: str,
        workspace_id: str,
        template_id: str,
        from_month: str,
    ) -> int:
        """
        Delete a template and its instances from ``from_month`` onward.
        Earlier instances stay. Returns the number of instances removed.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_TEMPLATES)
            from_month = self._month_id(workspace_id, EntityType.TEMPLATE, from_month, "from_month")
            template = self._entity(workspace_id, EntityType.TEMPLATE, template_id)
            instances = [
                instance for instance in self._template_instances(workspace_id, template_id)
                if _instance_month(instance) >= from_month
            ]
            with self._bus.batch():
                touched: set[str] = set()
                for instance in instances:
                    touched |= self._months_touched(instance)
                    self._apply_local(session, actor_id, instance, MutationOp.DELETE)
                self._apply_local(session, actor_id, template, MutationOp.DELETE, touched)
        self._schedule(session)
        return len(instances)

    async def toggle_template(
        self,
        actor_id: str,
        workspace_id: str,
        template_id: str,
        active: bool,
        current_month: str,
    ) -> RecurringTemplate:
        """
        Pause or resume a template.

        Pausing a card purchase template removes its instances after
        ``current_month``. Resuming fills in the missing instances of the
        months after ``current_month`` that already exist.
        """
        session = self._open(workspace_id)
        async with session.lock:
            workspace = self._workspace(workspace_id)
            self._authorize(actor_id, workspace, Action.EDIT_TEMPLATES)
            current_month = self._month_id(
                workspace_id, EntityType.TEMPLATE, current_month, "current_month",
            )
            template = self._entity(workspace_id, EntityType.TEMPLATE, template_id)
            updated = self._validator.update(template, {"active": active, "updated_at": utc_now()})

            with self._bus.batch():
                self._apply_local(session, actor_id, updated, MutationOp.UPSERT)
                touched: set[str] = set()
                if not active and updated.kind == TemplateKind.CARD_PURCHASE:
                    for instance in self._template_instances(workspace_id, template_id):
                        if _instance_month(instance) > current_month:
                            touched |= self._months_touched(instance)
                            self._apply_local(session, actor_id, instance, MutationOp.DELETE)
                if active:
                    for month in self._store.months(workspace_id):
                        if month.id > current_month and self._materialize_instance(
                            session, actor_id, updated, month.id
                        ) is not None:
                            touched.add(month.id)
                self._recompute(workspace_id, touched)
        self._schedule(session)
        return updated

    async def list_templates(self, actor_id: str, workspace_id: str) -> list[RecurringTemplate]:
        workspace = self._workspace(workspace_id)
        self._authorize(actor_id, workspace, Action.READ)
        return self._store.templates(workspace_id)
