from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable

from ..models import AccountingBasis, PeriodFilter, Trade
from ..utils.month_utils import parse_date
from .accounting import relevant_date


def fy_start_year_for(day: date) -> int:
    """Financial years run 1 April to 31 March."""
    return day.year if day.month >= 4 else day.year - 1


def period_bounds(period: PeriodFilter, today: date | None = None) -> tuple[date, date] | None:
    """Inclusive (start, end) for the period, or None when it is unbounded."""
    now = today or date.today()
    if period.type == "all":
        return None
    if period.type == "week":
        return now - timedelta(days=7), now
    if period.type == "month":
        year = period.year or now.year
        month = period.month or now.month
        start = date(year, month, 1)
        end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        return start, end - timedelta(days=1)
    if period.type == "fy":
        start_year = period.fy_start_year if period.fy_start_year is not None else fy_start_year_for(now)
        return date(start_year, 4, 1), date(start_year + 1, 3, 31)
    if period.type == "cy":
        year = period.year or now.year
        return date(year, 1, 1), date(year, 12, 31)
    start = parse_date(period.start_date)
    end = parse_date(period.end_date)
    if start is None or end is None:
        return None
    return start, end


def is_in_period(date_text: str | None, period: PeriodFilter, today: date | None = None) -> bool:
    bounds = period_bounds(period, today)
    if bounds is None:
        return True
    day = parse_date(date_text)
    if day is None:
        return False
    return bounds[0] <= day <= bounds[1]


def filter_trades(
    trades: Iterable[Trade],
    period: PeriodFilter,
    basis: AccountingBasis = "accrual",
    today: date | None = None,
) -> list[Trade]:
    """Trades whose accounting-relevant date falls inside the period."""
    return [trade for trade in trades if is_in_period(relevant_date(trade, basis), period, today)]
