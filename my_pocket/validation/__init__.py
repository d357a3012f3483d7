"""Input validation for ledger mutations."""

from my_pocket.validation.validator import LedgerValidator, ValidationError

__all__ = ["LedgerValidator", "ValidationError"]
