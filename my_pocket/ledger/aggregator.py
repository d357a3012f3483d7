"""
Ledger Aggregator

Computes the dashboard figures of a month from its child records and
rolls each month's leftover (sobra) into the next month's opening balance.

DESIGN DECISION: Totals are always rebuilt from Despesas and Compras.
The values cached on the Month record are written back after every
recompute, but are never read as inputs except for the previous month's
sobra during rollover.

ROLLOVER: A month whose opening balance was never set explicitly
(``saldo_inicial_override`` is False) takes the previous calendar month's
sobra, and keeps following it when that month is recomputed. Once the
user sets a month's balance, the chain is pinned at that month: edits in
earlier months no longer reach it or anything after it.
"""

from decimal import Decimal
from typing import Iterable, Optional

from my_pocket.ledger.installments import active_installment, months_spanned
from my_pocket.ledger.months import next_month_id, previous_month_id
from my_pocket.models.ledger import Compra, Month, MonthTotals
from my_pocket.store import EntityStore


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


class MonthNotMaterialized(LookupError):
    """The month has not been opened in this workspace yet."""

    def __init__(self, workspace_id: str, month_id: str):
        self.workspace_id = workspace_id
        self.month_id = month_id
        super().__init__(f"Month {month_id} does not exist in workspace {workspace_id}")


def spending_percentage(total_gastos: Decimal, saldo_inicial: Decimal) -> Decimal:
    """Share of the opening balance already committed (0 when the balance is not positive)."""
    if saldo_inicial <= 0:
        return ZERO
    return (HUNDRED * total_gastos / saldo_inicial).quantize(CENT)


class LedgerAggregator:
    """
    Computes month totals over an EntityStore.
    """

    def __init__(self, store: EntityStore):
        self._store = store

    def _require_month(self, workspace_id: str, month_id: str) -> Month:
        month = self._store.month(workspace_id, month_id)
        if month is None:
            raise MonthNotMaterialized(workspace_id, month_id)
        return month

    def totals_for(self, workspace_id: str, month_id: str) -> MonthTotals:
        """
        Compute the totals of a month without touching the store.

        Raises:
            MonthNotMaterialized: If the month does not exist
        """
        month = self._require_month(workspace_id, month_id)
        return self.compute(month)

    def compute(self, month: Month) -> MonthTotals:
        """Totals of a month record, stored or not."""
        workspace_id = month.workspace_id
        despesas = self._store.despesas(workspace_id, month.id)
        total_despesas = sum((despesa.valor_planejado for despesa in despesas), ZERO)
        total_pagas = sum((despesa.valor_planejado for despesa in despesas if despesa.pago), ZERO)

        faturas: dict[str, Decimal] = {}
        for cartao in self._store.cartoes(workspace_id):
            faturas[cartao.id] = sum(
                (
                    active_installment(compra, month.id).amount
                    for compra in self._store.compras(workspace_id, cartao.id)
                ),
                ZERO,
            )
        total_cartoes = sum(faturas.values(), ZERO)

        saldo_inicial = month.saldo_inicial.quantize(CENT)
        return MonthTotals(
            workspace_id=workspace_id,
            month_id=month.id,
            saldo_inicial=saldo_inicial,
            saldo_inicial_override=month.saldo_inicial_override,
            total_despesas=total_despesas.quantize(CENT),
            total_despesas_pagas=total_pagas.quantize(CENT),
            total_cartoes=total_cartoes.quantize(CENT),
            faturas=faturas,
            sobra=(saldo_inicial - total_despesas - total_cartoes).quantize(CENT),
            spending_percentage=spending_percentage(total_despesas + total_cartoes, saldo_inicial),
        )

    def recompute(self, workspace_id: str, month_id: str) -> MonthTotals:
        """
        Compute a month's totals and cache them on its Month record.

        Raises:
            MonthNotMaterialized: If the month does not exist
        """
        month = self._require_month(workspace_id, month_id)
        totals = self.compute(month)
        self._store.put(month.model_copy(update={
            "total_despesas": totals.total_despesas,
            "total_cartoes": totals.total_cartoes,
            "sobra": totals.sobra,
        }))
        return totals

    def opening_balance(self, workspace_id: str, month_id: str) -> Decimal:
        """The previous calendar month's sobra, or 0 if that month was never opened."""
        previous = self._store.month(workspace_id, previous_month_id(month_id))
        if previous is None:
            return ZERO
        return previous.sobra.quantize(CENT)

    def new_month(self, workspace_id: str, month_id: str) -> Month:
        """Build (but do not store) a month carrying the rolled-over balance."""
        return Month(
            id=month_id,
            workspace_id=workspace_id,
            saldo_inicial=self.opening_balance(workspace_id, month_id),
        )

    def _roll_over(self, month: Month) -> Month:
        if month.saldo_inicial_override:
            return month
        previous = self._store.month(month.workspace_id, previous_month_id(month.id))
        if previous is None or previous.sobra == month.saldo_inicial:
            return month
        rolled = month.model_copy(update={"saldo_inicial": previous.sobra.quantize(CENT)})
        self._store.put(rolled)
        return rolled

    def recompute_forward(self, workspace_id: str, month_ids: Iterable[str]) -> list[Month]:
        """
        Recompute the given months and propagate each new sobra forward.

        Months are processed in calendar order. After a month is
        recomputed, the next calendar month is also processed when it
        exists, is not pinned by an override, and its opening balance no
        longer matches. Months that do not exist are skipped.

        Returns the Month records that were refreshed, in calendar order.
        """
        queue = sorted({
            month_id for month_id in month_ids
            if self._store.month(workspace_id, month_id) is not None
        })
        refreshed: dict[str, Month] = {}

        while queue:
            month_id = queue.pop(0)
            if month_id in refreshed:
                continue

            month = self._roll_over(self._require_month(workspace_id, month_id))
            self.recompute(workspace_id, month.id)
            month = self._require_month(workspace_id, month_id)
            refreshed[month_id] = month

            following_id = next_month_id(month_id)
            following = self._store.month(workspace_id, following_id)
            if (
                following is not None
                and following_id not in queue
                and following_id not in refreshed
                and not following.saldo_inicial_override
                and following.saldo_inicial != month.sobra
            ):
                queue.append(following_id)
                queue.sort()

        return [refreshed[month_id] for month_id in sorted(refreshed)]

    def months_affected_by(self, compra: Compra, previous: Optional[Compra] = None) -> list[str]:
        """
        Existing months a purchase contributes to (before and after an edit).
        """
        spanned = set(months_spanned(compra))
        if previous is not None:
            spanned.update(months_spanned(previous))
        return sorted(
            month_id for month_id in spanned
            if self._store.month(compra.workspace_id, month_id) is not None
        )
