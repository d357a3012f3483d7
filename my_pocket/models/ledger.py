"""
Ledger Models for My Pocket

These models define the strict schemas for every ledger entity:
workspaces, months, planned expenses (despesas), cards (cartoes),
installment purchases (compras) and recurring templates.

DESIGN DECISION: Models carry structural validity only (types, ranges,
lengths, membership invariants). Anything that depends on other entities
(totals, rollover, installment placement) lives in ``my_pocket.ledger``.

CRITICAL: Month totals stored on a Month are a cache of the last recompute.
They are never the authoritative figure; the aggregator always rebuilds
them from the child records.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from my_pocket.ledger.months import (
    format_month_name,
    is_valid_month_id,
    parse_month_id,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def _check_month_id(value: str) -> str:
    if not is_valid_month_id(value):
        raise ValueError(f"Invalid month id: {value!r} (expected YYYY-MM)")
    return value


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Role(str, Enum):
    """
    Workspace roles, ordered by capability: viewer < editor < owner.

    Each role includes every capability of the roles below it.
    """
    VIEWER = "viewer"
    EDITOR = "editor"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def covers(self, required: "Role") -> bool:
        """True if this role has at least the capabilities of ``required``."""
        return self.rank >= required.rank


_ROLE_RANK = {
    Role.VIEWER: 0,
    Role.EDITOR: 1,
    Role.OWNER: 2,
}


class EntityType(str, Enum):
    """Entity kinds, as used in cache keys and sync references."""
    WORKSPACE = "workspace"
    MONTH = "month"
    DESPESA = "despesa"
    CARTAO = "cartao"
    COMPRA = "compra"
    TEMPLATE = "template"


class ExpenseCategory(str, Enum):
    """
    Optional category tag for planned expenses.

    DESIGN DECISION: Using explicit categories rather than free text ensures
    consistent grouping on the dashboard.
    """
    CASA = "casa"
    ALIMENTACAO = "alimentacao"
    TRANSPORTE = "transporte"
    SAUDE = "saude"
    EDUCACAO = "educacao"
    LAZER = "lazer"
    COMPRAS = "compras"
    SERVICOS = "servicos"
    OUTROS = "outros"


class TemplateKind(str, Enum):
    """What a recurring template instantiates each month."""
    EXPENSE = "expense"
    CARD_PURCHASE = "card_purchase"


class Frequency(str, Enum):
    """Recurrence frequency of a template."""
    MENSAL = "mensal"
    BIMESTRAL = "bimestral"
    TRIMESTRAL = "trimestral"
    SEMESTRAL = "semestral"
    ANUAL = "anual"

    @property
    def interval_months(self) -> int:
        return _FREQUENCY_INTERVAL[self]


_FREQUENCY_INTERVAL = {
    Frequency.MENSAL: 1,
    Frequency.BIMESTRAL: 2,
    Frequency.TRIMESTRAL: 3,
    Frequency.SEMESTRAL: 6,
    Frequency.ANUAL: 12,
}


# =============================================================================
# REFERENCES
# =============================================================================

class EntityRef(BaseModel):
    """
    Address of one entity: ``(workspace_id, entity_type, entity_id)``.

    This is the key of the local cache and the unit the remote backend
    versions and pushes.
    """
    model_config = ConfigDict(frozen=True)

    workspace_id: str
    entity_type: EntityType
    entity_id: str

    def __str__(self) -> str:
        return f"{self.workspace_id}/{self.entity_type.value}/{self.entity_id}"


# =============================================================================
# ENTITIES
# =============================================================================

class LedgerEntity(BaseModel):
    """
    Common fields of every stored entity.

    ``version`` is the last version confirmed by the remote backend
    (0 means the entity was never confirmed).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    entity_type: ClassVar[EntityType]

    id: str = Field(
        default_factory=new_id,
        min_length=1,
        description="Entity identifier"
    )
    workspace_id: str = Field(
        default="",
        description="Workspace the entity belongs to"
    )
    version: int = Field(
        default=0,
        ge=0,
        description="Remote version last seen for this entity"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def ref(self) -> EntityRef:
        return EntityRef(
            workspace_id=self.workspace_id,
            entity_type=self.entity_type,
            entity_id=self.id,
        )


class WorkspaceMember(BaseModel):
    """One member of a workspace and the role they hold."""
    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1)
    role: Role
    email: Optional[str] = None
    display_name: Optional[str] = None
    added_at: datetime = Field(default_factory=utc_now)


class Workspace(LedgerEntity):
    """
    A shared financial context with membership and roles.

    CRITICAL: Exactly one member is the owner, and that member is
    ``owner_id``. Member user ids are unique.
    """
    entity_type: ClassVar[EntityType] = EntityType.WORKSPACE

    name: str = Field(
        ...,
        min_length=3,
        max_length=100,
        description="Workspace name"
    )
    owner_id: str = Field(..., min_length=1)
    members: list[WorkspaceMember] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_membership(self) -> 'Workspace':
        if not self.workspace_id:
            self.workspace_id = self.id
        if self.workspace_id != self.id:
            raise ValueError("A workspace belongs to itself (workspace_id must equal id)")

        user_ids = [member.user_id for member in self.members]
        if len(user_ids) != len(set(user_ids)):
            raise ValueError("Workspace members must be unique")

        owners = [member for member in self.members if member.role == Role.OWNER]
        if len(owners) != 1:
            raise ValueError("A workspace must have exactly one owner")
        if owners[0].user_id != self.owner_id:
            raise ValueError("The owner member must match owner_id")
        return self

    def member(self, user_id: str) -> Optional[WorkspaceMember]:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def role_of(self, user_id: str) -> Optional[Role]:
        member = self.member(user_id)
        return member.role if member else None


class Month(LedgerEntity):
    """
    A workspace-scoped ledger period identified by ``YYYY-MM``.

    Only ``saldo_inicial`` and its override flag are user data; the totals
    are the cached output of the last recompute.
    """
    entity_type: ClassVar[EntityType] = EntityType.MONTH

    saldo_inicial: Decimal = Field(
        default=Decimal("0"),
        decimal_places=2,
        description="Opening balance (may be negative when rolled over)"
    )
    saldo_inicial_override: bool = Field(
        default=False,
        description="True once the user set the opening balance explicitly"
    )

    # Cached recompute output
    total_despesas: Decimal = Field(default=Decimal("0"))
    total_cartoes: Decimal = Field(default=Decimal("0"))
    sobra: Decimal = Field(default=Decimal("0"))

    @field_validator('id')
    @classmethod
    def validate_month_id(cls, v: str) -> str:
        return _check_month_id(v)

    @property
    def year(self) -> int:
        return parse_month_id(self.id)[0]

    @property
    def month_number(self) -> int:
        return parse_month_id(self.id)[1]

    @property
    def name(self) -> str:
        return format_month_name(self.id)


class Despesa(LedgerEntity):
    """A planned, non-installment expense within a month."""
    entity_type: ClassVar[EntityType] = EntityType.DESPESA

    month_id: str = Field(..., description="Month the expense belongs to")
    nome: str = Field(
        ...,
        min_length=2,
        max_length=200,
        description="Expense name"
    )
    valor_planejado: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
        description="Planned amount"
    )
    formula: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Amount as typed by the user (e.g. '100+50' or '184,28')"
    )
    pago: bool = Field(default=False, description="Already paid")
    categoria: Optional[ExpenseCategory] = None
    template_id: Optional[str] = Field(
        default=None,
        description="Recurring template this expense was instantiated from"
    )

    @field_validator('month_id')
    @classmethod
    def validate_month_id(cls, v: str) -> str:
        return _check_month_id(v)


class Cartao(LedgerEntity):
    """A credit card. Long-lived, owned by the workspace (not by a month)."""
    entity_type: ClassVar[EntityType] = EntityType.CARTAO

    nome: str = Field(..., min_length=2, max_length=100)
    dia_fechamento: int = Field(
        ...,
        ge=1,
        le=31,
        description="Closing day of the card's invoice"
    )
    limite_total: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        decimal_places=2,
        description="Credit limit"
    )


class Compra(LedgerEntity):
    """
    An installment purchase on a card.

    The purchase was created against ``mes_ancora`` with installment
    ``parcela_atual`` of ``parcelas_total``; the materializer spreads it
    forward from there.
    """
    entity_type: ClassVar[EntityType] = EntityType.COMPRA

    cartao_id: str = Field(..., min_length=1)
    descricao: str = Field(..., min_length=1, max_length=200)
    valor_total: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Total purchase amount across all installments"
    )
    parcela_atual: int = Field(
        default=1,
        ge=1,
        description="Installment index the purchase starts at in the anchor month"
    )
    parcelas_total: int = Field(default=1, ge=1)
    marcado: bool = Field(
        default=True,
        description="Whether the purchase counts toward totals at all"
    )
    data_compra: date = Field(default_factory=date.today)
    mes_ancora: str = Field(
        ...,
        description="Month the purchase was created against"
    )
    template_id: Optional[str] = None

    @field_validator('mes_ancora')
    @classmethod
    def validate_anchor(cls, v: str) -> str:
        return _check_month_id(v)

    @model_validator(mode='after')
    def validate_installments(self) -> 'Compra':
        if self.parcela_atual > self.parcelas_total:
            raise ValueError("parcela_atual cannot be greater than parcelas_total")
        return self


class RecurringTemplate(LedgerEntity):
    """
    A recurring expense or card purchase that is instantiated into months.
    """
    entity_type: ClassVar[EntityType] = EntityType.TEMPLATE

    kind: TemplateKind
    nome: str = Field(..., min_length=2, max_length=200)
    valor: Decimal = Field(..., gt=0, decimal_places=2)
    formula: Optional[str] = Field(default=None, max_length=200)
    frequency: Frequency = Frequency.MENSAL
    start_month: str
    end_month: Optional[str] = None
    skip_months: list[int] = Field(
        default_factory=list,
        description="Calendar months (1-12) in which the template is skipped"
    )
    active: bool = True
    categoria: Optional[ExpenseCategory] = None
    cartao_id: Optional[str] = Field(
        default=None,
        description="Card that receives the instances of a card_purchase template"
    )

    @field_validator('start_month', 'end_month')
    @classmethod
    def validate_months(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_month_id(v)

    @field_validator('skip_months')
    @classmethod
    def validate_skip_months(cls, v: list[int]) -> list[int]:
        for month in v:
            if not 1 <= month <= 12:
                raise ValueError(f"Invalid calendar month to skip: {month}")
        return sorted(set(v))

    @model_validator(mode='after')
    def validate_template(self) -> 'RecurringTemplate':
        if self.kind == TemplateKind.CARD_PURCHASE and not self.cartao_id:
            raise ValueError("A card_purchase template needs a cartao_id")
        if self.end_month and self.end_month < self.start_month:
            raise ValueError("end_month cannot be before start_month")
        return self


ENTITY_MODELS: dict[EntityType, type[LedgerEntity]] = {
    EntityType.WORKSPACE: Workspace,
    EntityType.MONTH: Month,
    EntityType.DESPESA: Despesa,
    EntityType.CARTAO: Cartao,
    EntityType.COMPRA: Compra,
    EntityType.TEMPLATE: RecurringTemplate,
}


def entity_from_dict(entity_type: EntityType, data: dict) -> LedgerEntity:
    """Rebuild a typed entity from its stored/transmitted dict form."""
    return ENTITY_MODELS[entity_type].model_validate(data)


# =============================================================================
# READ MODELS
# =============================================================================

class InstallmentSlice(BaseModel):
    """
    Contribution of one purchase to one month.

    ``index`` is the installment number (0 when the month is outside the
    purchase's range).
    """
    model_config = ConfigDict(frozen=True)

    active: bool
    amount: Decimal = Decimal("0")
    index: int = 0


class MonthTotals(BaseModel):
    """
    Dashboard figures for one month, as produced by the aggregator.

    ``sobra = saldo_inicial - total_despesas - total_cartoes`` always holds,
    including when the result is negative.
    """
    workspace_id: str
    month_id: str
    saldo_inicial: Decimal
    saldo_inicial_override: bool = False
    total_despesas: Decimal
    total_despesas_pagas: Decimal
    total_cartoes: Decimal
    faturas: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Invoice total per card for this month"
    )
    sobra: Decimal
    spending_percentage: Decimal
    computed_at: datetime = Field(default_factory=utc_now)

    @property
    def total_gastos(self) -> Decimal:
        return self.total_despesas + self.total_cartoes
