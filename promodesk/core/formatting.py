"""Helpers for consistent user-facing dates and form values."""
from __future__ import annotations

import calendar
import re
from datetime import date, datetime, time
from typing import Any, Iterable

DISPLAY_DATETIME_FORMAT = "%d/%m/%Y %I:%M %p"
_STRING_PARSE_PATTERNS: Iterable[str] = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
)
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

MONTH_CHOICES: tuple[tuple[int, str], ...] = tuple(
    (number, calendar.month_name[number]) for number in range(1, 13)
)


def _coerce_to_datetime(value: Any) -> datetime | None:
    """Attempt to normalise incoming date-like values to a datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            if text.endswith("Z"):
                try:
                    return datetime.fromisoformat(text.replace("Z", "+00:00"))
                except ValueError:
                    pass
            for pattern in _STRING_PARSE_PATTERNS:
                try:
                    return datetime.strptime(text, pattern)
                except ValueError:
                    continue
        return None
    return None


def format_display_datetime(value: Any) -> str:
    """Format a value as dd/mm/yyyy hh:mm AM/PM or return an empty string."""
    coerced = _coerce_to_datetime(value)
    if coerced is None:
        return "" if value in (None, "") else str(value)
    return coerced.strftime(DISPLAY_DATETIME_FORMAT)


def month_label(year: int, month: int) -> str:
    """Return e.g. ``March 2025``."""
    return f"{calendar.month_name[month]} {year}"


def year_choices(today: date | None = None, span: int = 5) -> list[int]:
    """Selectable years, starting at the current one."""
    current = (today or date.today()).year
    return [current + offset for offset in range(span)]


def parse_optional_int(value: Any) -> int | None:
    """Read the leading integer of a form value, or None when there is none.

    ``"12"`` and ``" 12 days"`` both give 12; ``""`` and ``"abc"`` give None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    if match is None:
        return None
    return int(match.group(1))


def parse_days(value: Any) -> int:
    """Attendance days from a form field; anything unparsable counts as 0."""
    parsed = parse_optional_int(value)
    return parsed if parsed is not None else 0


__all__ = [
    "MONTH_CHOICES",
    "format_display_datetime",
    "month_label",
    "parse_days",
    "parse_optional_int",
    "year_choices",
]
