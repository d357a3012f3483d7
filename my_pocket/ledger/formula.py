"""
Amount formulas.

Users type amounts the way they write them on paper: ``"184,28"``,
``"1.000,50"`` or a small sum such as ``"100+50"``. This module turns that
text into a Decimal.

CRITICAL: Formulas are evaluated by simpleeval with no names, no functions
and only ``+ - * /`` (plus unary signs). Nothing is ever passed to ``eval``.
"""

import ast
import operator
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from simpleeval import InvalidExpression, SimpleEval


CENT = Decimal("0.01")
MAX_FORMULA_LENGTH = 200

_NUMBER_TOKEN = re.compile(r"\d[\d.,]*")

ALLOWED_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


class FormulaError(ValueError):
    """The formula is not a valid arithmetic expression."""
    pass


def _normalize_number(token: str) -> str:
    has_dots = "." in token
    has_commas = "," in token
    if has_dots and has_commas:
        # 1.000,50 - dots group thousands, the comma is the decimal mark
        return token.replace(".", "").replace(",", ".")
    if has_commas:
        return token.replace(",", ".")
    return token


def normalize_formula(expression: str) -> str:
    """Rewrite Brazilian decimal notation into Python number literals."""
    return _NUMBER_TOKEN.sub(lambda match: _normalize_number(match.group(0)), expression.strip())


def _evaluator() -> SimpleEval:
    return SimpleEval(operators=dict(ALLOWED_OPERATORS), functions={}, names={})


def _evaluate_text(text: str) -> Decimal:
    try:
        result = _evaluator().eval(normalize_formula(text))
    except SyntaxError as e:
        raise FormulaError(f"Invalid formula: {text!r}") from e
    except ZeroDivisionError as e:
        raise FormulaError("Division by zero") from e
    except (InvalidExpression, ArithmeticError) as e:
        raise FormulaError(f"Invalid formula: {text!r} ({e})") from e

    if isinstance(result, bool) or not isinstance(result, (int, float)):
        raise FormulaError(f"Formula is not a number: {text!r}")
    return Decimal(str(result))


def evaluate_formula(value: Union[str, int, float, Decimal, None]) -> Decimal:
    """
    Evaluate an amount typed by the user.

    Numbers pass through; an empty string is zero. The result is rounded
    to cents.

    Raises:
        FormulaError: If the text is not a valid arithmetic expression
    """
    if value is None:
        return Decimal("0.00")
    if isinstance(value, bool):
        raise FormulaError("Boolean is not an amount")
    if isinstance(value, (int, float, Decimal)):
        result = Decimal(str(value))
    else:
        text = str(value).strip()
        if not text:
            return Decimal("0.00")
        if len(text) > MAX_FORMULA_LENGTH:
            raise FormulaError("Formula is too long")
        result = _evaluate_text(text)

    try:
        if not result.is_finite():
            raise FormulaError("Formula result is not a finite number")
        return result.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise FormulaError("Formula result is out of range") from e
