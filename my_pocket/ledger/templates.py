"""
Recurring templates.

A template describes an expense or a card purchase that repeats on a
schedule. Instances are ordinary Despesas/Compras tagged with
``template_id``.

DESIGN DECISION: The id of an instance is derived from
``(template_id, month_id)``. Every replica that instantiates the same
template into the same month produces the same entity, so two devices
opening the same month never create duplicates.
"""

from datetime import date
from uuid import UUID, uuid5

from my_pocket.ledger.months import months_between, parse_month_id
from my_pocket.models.ledger import (
    Compra,
    Despesa,
    EntityRef,
    EntityType,
    LedgerEntity,
    RecurringTemplate,
    TemplateKind,
)


TEMPLATE_INSTANCE_NAMESPACE = UUID("6f1d0c3e-8f0b-4d7e-9a55-3c2b7e4f9a10")


def instance_id(template_id: str, month_id: str) -> str:
    return str(uuid5(TEMPLATE_INSTANCE_NAMESPACE, f"{template_id}:{month_id}"))


def instance_entity_type(template: RecurringTemplate) -> EntityType:
    if template.kind == TemplateKind.EXPENSE:
        return EntityType.DESPESA
    return EntityType.COMPRA


def instance_ref(template: RecurringTemplate, month_id: str) -> EntityRef:
    return EntityRef(
        workspace_id=template.workspace_id,
        entity_type=instance_entity_type(template),
        entity_id=instance_id(template.id, month_id),
    )


def applies_in_month(
    template: RecurringTemplate,
    month_id: str,
    include_inactive: bool = False,
) -> bool:
    """
    Whether the template has an occurrence in ``month_id``.

    The month must fall between ``start_month`` and ``end_month``, must not
    be a skipped calendar month, and must land on the frequency's cadence
    counted from ``start_month``.
    """
    if not template.active and not include_inactive:
        return False
    elapsed = months_between(template.start_month, month_id)
    if elapsed < 0:
        return False
    if template.end_month is not None and months_between(template.end_month, month_id) > 0:
        return False
    if parse_month_id(month_id)[1] in template.skip_months:
        return False
    return elapsed % template.frequency.interval_months == 0


def instantiate(template: RecurringTemplate, month_id: str) -> LedgerEntity:
    """Build the template's instance for ``month_id`` (not stored)."""
    entity_id = instance_id(template.id, month_id)

    if template.kind == TemplateKind.EXPENSE:
        return Despesa(
            id=entity_id,
            workspace_id=template.workspace_id,
            month_id=month_id,
            nome=template.nome,
            valor_planejado=template.valor,
            formula=template.formula,
            categoria=template.categoria,
            template_id=template.id,
        )

    year, month = parse_month_id(month_id)
    return Compra(
        id=entity_id,
        workspace_id=template.workspace_id,
        cartao_id=template.cartao_id,
        descricao=template.nome,
        valor_total=template.valor,
        parcela_atual=1,
        parcelas_total=1,
        marcado=True,
        data_compra=date(year, month, 1),
        mes_ancora=month_id,
        template_id=template.id,
    )
