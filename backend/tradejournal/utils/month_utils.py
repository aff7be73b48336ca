"""
Calendar helpers shared by the accounting engine.

Month keys are (year, month_index) tuples with month_index in 1..12, which
sort chronologically and make month arithmetic trivial.
"""

from __future__ import annotations

from datetime import date, datetime

SHORT_MONTHS: tuple[str, ...] = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)

LONG_MONTHS: tuple[str, ...] = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_MONTH_LOOKUP: dict[str, int] = {
    **{name.lower(): idx + 1 for idx, name in enumerate(SHORT_MONTHS)},
    **{name.lower(): idx + 1 for idx, name in enumerate(LONG_MONTHS)},
    "sept": 9,
}

MonthKey = tuple[int, int]


class InvalidMonthError(ValueError):
    """Raised when a month name cannot be normalized."""

    def __init__(self, month: object) -> None:
        super().__init__(f"Invalid month: {month!r}. Expected month names like 'Jan' or 'January'.")
        self.month = month


def month_index(month: str) -> int:
    if not isinstance(month, str):
        raise InvalidMonthError(month)
    index = _MONTH_LOOKUP.get(month.strip().lower())
    if index is None:
        raise InvalidMonthError(month)
    return index


def normalize_month(month: str) -> str:
    """Map 'January', 'jan' or 'Jan' to the canonical 'Jan'."""
    return SHORT_MONTHS[month_index(month) - 1]


def month_name(index: int) -> str:
    return SHORT_MONTHS[index - 1]


def parse_date(date_text: str | None) -> date | None:
    if not date_text:
        return None
    text = str(date_text).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def month_key_of(value: date) -> MonthKey:
    return (value.year, value.month)


def month_key_of_text(date_text: str | None) -> MonthKey | None:
    parsed = parse_date(date_text)
    return month_key_of(parsed) if parsed else None


def next_month(key: MonthKey) -> MonthKey:
    year, month = key
    if month == 12:
        return (year + 1, 1)
    return (year, month + 1)


def iter_months(start: MonthKey, end: MonthKey):
    cursor = start
    while cursor <= end:
        yield cursor
        cursor = next_month(cursor)


def days_between(start: str | None, end: str | None) -> int:
    a = parse_date(start)
    b = parse_date(end)
    if not a or not b:
        return 0
    return max(0, (b - a).days)
