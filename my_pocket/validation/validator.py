"""
Input Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SHAPE VALIDATION:
- Amount formulas evaluate to a number
- Month ids are well formed
- Installment ranges are consistent (reported as InvalidInstallmentRange)

STAGE 2 - SCHEMA VALIDATION:
- The pydantic model for the entity is built from the merged data
- Lengths, ranges and cross-field rules of the model apply

IMPORTANT: Validation NEVER silently fixes issues. The first problem found
is raised as ``ValidationError(field, reason)`` before anything is written,
so a rejected request leaves the store, the cache and the push queue
untouched.
"""

from decimal import Decimal
from typing import Any, Optional, TypeVar, Union

import pydantic

from my_pocket.ledger.formula import FormulaError, evaluate_formula
from my_pocket.ledger.installments import check_installment_range
from my_pocket.ledger.months import is_valid_month_id
from my_pocket.models.ledger import LedgerEntity


EntityT = TypeVar("EntityT", bound=LedgerEntity)

AmountInput = Union[str, int, float, Decimal]


class ValidationError(ValueError):
    """A single invalid input field."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class LedgerValidator:
    """
    Validates user input for ledger entities.

    Stage 1 checks run on the raw input; stage 2 builds the model.
    """

    # =========================================================================
    # STAGE 1 - SHAPE
    # =========================================================================

    def month_id(self, value: Any, field: str = "month_id") -> str:
        if not is_valid_month_id(value):
            raise ValidationError(field, f"{value!r} is not a valid YYYY-MM month")
        return value

    def amount(self, value: AmountInput, field: str) -> tuple[Decimal, Optional[str]]:
        """
        Evaluate an amount as typed by the user.

        Returns ``(amount, formula)`` where ``formula`` is the original text
        for string input and None for numeric input.
        """
        try:
            amount = evaluate_formula(value)
        except FormulaError as e:
            raise ValidationError(field, str(e)) from e
        formula = value.strip() if isinstance(value, str) else None
        return amount, formula

    def installment_range(self, parcela_atual: Any, parcelas_total: Any) -> None:
        """
        Raises:
            InvalidInstallmentRange: If the range is inconsistent
            ValidationError: If either value is not an integer
        """
        for field, value in (("parcela_atual", parcela_atual), ("parcelas_total", parcelas_total)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(field, "must be an integer")
        check_installment_range(parcela_atual, parcelas_total)

    # =========================================================================
    # STAGE 2 - SCHEMA
    # =========================================================================

    def build(self, model: type[EntityT], data: dict[str, Any]) -> EntityT:
        """
        Build an entity, translating the first pydantic error.

        Raises:
            ValidationError: With the offending field and pydantic's message
        """
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or model.entity_type.value
            raise ValidationError(field, error["msg"]) from e

    def update(self, entity: EntityT, changes: dict[str, Any]) -> EntityT:
        """Apply ``changes`` to an existing entity and re-validate the result."""
        data = entity.model_dump()
        data.update(changes)
        return self.build(type(entity), data)
