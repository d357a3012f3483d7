"""
Installment Materializer

Maps a purchase (Compra) and a target month to "is an installment of this
purchase due in that month, which one, and how much".

DESIGN DECISION: Installment amounts are computed in cents. Each
installment is the total divided by the number of installments, truncated
to the cent; the final installment absorbs the remainder so that the
installments always add up to exactly ``valor_total``.

Example: 100.00 in 3 installments -> 33.33, 33.33, 33.34.
"""

from decimal import ROUND_DOWN, Decimal

from my_pocket.ledger.months import add_months, months_between
from my_pocket.models.ledger import Compra, InstallmentSlice


CENT = Decimal("0.01")

INACTIVE = InstallmentSlice(active=False, amount=Decimal("0.00"), index=0)


class InvalidInstallmentRange(ValueError):
    """``parcela_atual``/``parcelas_total`` do not describe a valid range."""

    def __init__(self, parcela_atual: int, parcelas_total: int):
        self.parcela_atual = parcela_atual
        self.parcelas_total = parcelas_total
        super().__init__(
            f"Invalid installment range: {parcela_atual}/{parcelas_total} "
            "(both must be >= 1 and parcela_atual <= parcelas_total)"
        )


def check_installment_range(parcela_atual: int, parcelas_total: int) -> None:
    """
    Raises:
        InvalidInstallmentRange: If either value is < 1 or the start is past the end
    """
    if parcela_atual < 1 or parcelas_total < 1 or parcela_atual > parcelas_total:
        raise InvalidInstallmentRange(parcela_atual, parcelas_total)


def installment_amount(valor_total: Decimal, parcelas_total: int, number: int) -> Decimal:
    """Amount of installment ``number`` (1-based) of a purchase."""
    check_installment_range(number, parcelas_total)
    base = (valor_total / parcelas_total).quantize(CENT, rounding=ROUND_DOWN)
    if number < parcelas_total:
        return base
    return valor_total - base * (parcelas_total - 1)


def installment_amounts(valor_total: Decimal, parcelas_total: int) -> list[Decimal]:
    """All installment amounts of a purchase, in order."""
    return [
        installment_amount(valor_total, parcelas_total, number)
        for number in range(1, parcelas_total + 1)
    ]


def active_installment(compra: Compra, month_id: str) -> InstallmentSlice:
    """
    Contribution of ``compra`` to ``month_id``.

    The anchor month holds installment ``parcela_atual``; each following
    month holds the next one until ``parcelas_total``. Months before the
    anchor, months past the last installment, and every month of an
    unmarked purchase are inactive with amount 0.

    Raises:
        InvalidInstallmentRange: If the purchase's installment range is invalid
    """
    check_installment_range(compra.parcela_atual, compra.parcelas_total)

    if not compra.marcado:
        return INACTIVE

    elapsed = months_between(compra.mes_ancora, month_id)
    number = elapsed + compra.parcela_atual
    if elapsed < 0 or not compra.parcela_atual <= number <= compra.parcelas_total:
        return INACTIVE

    return InstallmentSlice(
        active=True,
        amount=installment_amount(compra.valor_total, compra.parcelas_total, number),
        index=number,
    )


def last_installment_month(compra: Compra) -> str:
    """Month in which the final installment falls."""
    return add_months(compra.mes_ancora, compra.parcelas_total - compra.parcela_atual)


def months_spanned(compra: Compra) -> list[str]:
    """Every month from the anchor through the final installment."""
    return [
        add_months(compra.mes_ancora, offset)
        for offset in range(compra.parcelas_total - compra.parcela_atual + 1)
    ]


def installment_schedule(compra: Compra) -> list[tuple[str, InstallmentSlice]]:
    """``(month_id, slice)`` for every month the purchase spans."""
    return [(month_id, active_installment(compra, month_id)) for month_id in months_spanned(compra)]
