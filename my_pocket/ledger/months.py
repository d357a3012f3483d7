"""
Calendar helpers for ledger months.

A month is identified by a ``YYYY-MM`` string. These helpers are the only
place that does month arithmetic, so every component agrees on what
"next month" and "months elapsed" mean.
"""

import re
from datetime import date
from typing import Optional


MONTH_ID_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")

MIN_YEAR = 2001
MAX_YEAR = 2999

MONTH_NAMES_PT = [
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
]


def is_valid_month_id(month_id: object) -> bool:
    """Check a ``YYYY-MM`` identifier (years 2001-2999, months 01-12)."""
    if not isinstance(month_id, str):
        return False
    match = MONTH_ID_PATTERN.match(month_id)
    if not match:
        return False
    year, month = int(match.group(1)), int(match.group(2))
    return MIN_YEAR <= year <= MAX_YEAR and 1 <= month <= 12


def parse_month_id(month_id: str) -> tuple[int, int]:
    """
    Split a month id into ``(year, month)``.

    Raises:
        ValueError: If the id is not a valid ``YYYY-MM`` string
    """
    if not is_valid_month_id(month_id):
        raise ValueError(f"Invalid month id: {month_id!r} (expected YYYY-MM)")
    year, month = month_id.split("-")
    return int(year), int(month)


def format_month_id(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_id_for_date(value: date) -> str:
    return format_month_id(value.year, value.month)


def current_month_id(today: Optional[date] = None) -> str:
    return month_id_for_date(today or date.today())


def add_months(month_id: str, count: int) -> str:
    """Shift a month id by ``count`` months (negative goes back)."""
    year, month = parse_month_id(month_id)
    index = year * 12 + (month - 1) + count
    return format_month_id(index // 12, index % 12 + 1)


def next_month_id(month_id: str) -> str:
    return add_months(month_id, 1)


def previous_month_id(month_id: str) -> str:
    return add_months(month_id, -1)


def months_between(start: str, end: str) -> int:
    """
    Number of months elapsed from ``start`` to ``end``.

    Negative when ``end`` is before ``start``.
    """
    start_year, start_month = parse_month_id(start)
    end_year, end_month = parse_month_id(end)
    return (end_year - start_year) * 12 + (end_month - start_month)


def month_range(start: str, end: str) -> list[str]:
    """Every month id from ``start`` to ``end`` inclusive (empty if reversed)."""
    span = months_between(start, end)
    return [add_months(start, offset) for offset in range(span + 1)]


def format_month_name(month_id: str) -> str:
    """Human label in Portuguese, e.g. ``"Outubro 2025"``."""
    year, month = parse_month_id(month_id)
    return f"{MONTH_NAMES_PT[month - 1]} {year}"
