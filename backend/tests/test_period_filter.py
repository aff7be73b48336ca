from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tradejournal.core.period_filter import filter_trades, fy_start_year_for, is_in_period
from tradejournal.models import EntryLot, ExitLot, PeriodFilter, Trade

TODAY = date(2024, 6, 15)


def test_financial_year_runs_april_to_march() -> None:
    fy = PeriodFilter(type="fy", fy_start_year=2023)

    assert is_in_period("2023-04-01", fy, TODAY)
    assert is_in_period("2024-03-31", fy, TODAY)
    assert not is_in_period("2023-03-31", fy, TODAY)
    assert not is_in_period("2024-04-01", fy, TODAY)
    assert fy_start_year_for(date(2024, 2, 1)) == 2023
    assert fy_start_year_for(date(2024, 4, 1)) == 2024


def test_month_week_and_calendar_year() -> None:
    assert is_in_period("2024-06-01", PeriodFilter(type="month"), TODAY)
    assert not is_in_period("2024-05-31", PeriodFilter(type="month"), TODAY)
    assert is_in_period("2024-02-29", PeriodFilter(type="month", month=2, year=2024), TODAY)
    assert is_in_period("2024-06-10", PeriodFilter(type="week"), TODAY)
    assert not is_in_period("2024-06-01", PeriodFilter(type="week"), TODAY)
    assert is_in_period("2024-12-31", PeriodFilter(type="cy"), TODAY)
    assert not is_in_period("2023-12-31", PeriodFilter(type="cy"), TODAY)


def test_custom_range_and_open_bounds() -> None:
    custom = PeriodFilter(type="custom", start_date="2024-01-10", end_date="2024-01-20")
    assert is_in_period("2024-01-10", custom, TODAY)
    assert not is_in_period("2024-01-21", custom, TODAY)
    assert is_in_period("1990-01-01", PeriodFilter(type="custom"), TODAY)
    assert is_in_period("1990-01-01", PeriodFilter(type="all"), TODAY)


def test_filter_uses_accounting_relevant_date() -> None:
    trade = Trade(
        id="t1",
        date="2024-03-28",
        symbol="abc",
        entries=[EntryLot(price=10, quantity=10)],
        exits=[ExitLot(price=11, quantity=10, date="2024-04-02")],
        position_status="Closed",
    )
    fy_2024 = PeriodFilter(type="fy", fy_start_year=2024)

    assert filter_trades([trade], fy_2024, "accrual", TODAY) == []
    assert [t.id for t in filter_trades([trade], fy_2024, "cash", TODAY)] == ["t1"]
