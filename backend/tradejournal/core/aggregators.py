from __future__ import annotations

from collections import defaultdict
from typing import Callable, Iterable

from ..models import (
    AccountingBasis,
    GroupedPL,
    LedgerEntry,
    MonthlyReturnPoint,
    MonthlyTruePortfolio,
    PerformerMetric,
    PerformerRow,
    TopPerformers,
    Trade,
)
from ..utils.month_utils import parse_date
from .accounting import attributed_pl, entry_date, entry_trade_id, relevant_date
from .lot_resolver import portfolio_impact, resolve_trade

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
UNSPECIFIED_SETUP = "Unspecified"


def _metric_value(
    trade: Trade,
    metric: PerformerMetric,
    basis: AccountingBasis,
    portfolio_size_for: Callable[[str], float] | None,
) -> float:
    if metric == "stock_move":
        return resolve_trade(trade).stock_move_percent
    if metric == "reward_risk":
        return resolve_trade(trade).reward_risk
    pl = attributed_pl(trade, basis)
    if metric == "pl":
        return pl
    size = portfolio_size_for(relevant_date(trade, basis)) if portfolio_size_for else 0.0
    return portfolio_impact(pl, size)


def top_performers(
    trades: Iterable[Trade],
    metric: PerformerMetric = "pl",
    basis: AccountingBasis = "accrual",
    portfolio_size_for: Callable[[str], float] | None = None,
) -> TopPerformers:
    """
    Highest and lowest trade by one metric.

    Rows are per original trade, so a trade exploded into several cash-basis
    exits is ranked once.
    """
    seen: set[str] = set()
    rows: list[PerformerRow] = []
    for trade in trades:
        if trade.id in seen:
            continue
        seen.add(trade.id)
        rows.append(
            PerformerRow(
                trade_id=trade.id,
                symbol=trade.symbol.strip().upper(),
                value=_metric_value(trade, metric, basis, portfolio_size_for),
            )
        )
    if not rows:
        return TopPerformers(metric=metric)
    ranked = sorted(rows, key=lambda row: row.value, reverse=True)
    return TopPerformers(
        metric=metric,
        highest=ranked[0],
        lowest=ranked[-1],
        has_multiple_trades=len(ranked) > 1,
    )


def _group(entries: Iterable[LedgerEntry], key_for: Callable[[LedgerEntry], str | None]) -> list[GroupedPL]:
    totals: dict[str, float] = defaultdict(float)
    trade_ids: dict[str, set[str]] = defaultdict(set)
    for entry in entries:
        key = key_for(entry)
        if key is None:
            continue
        totals[key] += entry.pl
        trade_ids[key].add(entry_trade_id(entry))
    return [GroupedPL(key=key, pl=totals[key], trade_count=len(trade_ids[key])) for key in totals]


def pl_by_symbol(entries: Iterable[LedgerEntry]) -> list[GroupedPL]:
    """Booked P/L per symbol, largest first."""
    rows = _group(entries, lambda entry: entry.symbol)
    return sorted(rows, key=lambda row: row.pl, reverse=True)


def pl_by_weekday(entries: Iterable[LedgerEntry]) -> list[GroupedPL]:
    """Booked P/L per weekday of the booking date, Mon..Sun."""

    def _weekday(entry: LedgerEntry) -> str | None:
        day = parse_date(entry_date(entry))
        return WEEKDAYS[day.weekday()] if day else None

    rows = {row.key: row for row in _group(entries, _weekday)}
    return [rows.get(name, GroupedPL(key=name, pl=0.0, trade_count=0)) for name in WEEKDAYS]


def _setup_name(trade: Trade | None) -> str:
    if trade is None or not trade.setup.strip():
        return UNSPECIFIED_SETUP
    return trade.setup.strip()


def pl_by_setup(entries: Iterable[LedgerEntry], trades: Iterable[Trade]) -> list[GroupedPL]:
    by_id = {trade.id: trade for trade in trades}
    rows = _group(entries, lambda entry: _setup_name(by_id.get(entry_trade_id(entry))))
    return sorted(rows, key=lambda row: row.pl, reverse=True)


def setup_frequency(trades: Iterable[Trade]) -> list[GroupedPL]:
    """How often each setup was traded, with the realized P/L it produced."""
    counts: dict[str, int] = defaultdict(int)
    totals: dict[str, float] = defaultdict(float)
    for trade in trades:
        name = _setup_name(trade)
        counts[name] += 1
        totals[name] += resolve_trade(trade).realized_pl
    rows = [GroupedPL(key=name, pl=totals[name], trade_count=counts[name]) for name in counts]
    return sorted(rows, key=lambda row: (-row.trade_count, row.key))


def monthly_pl_table(monthly: Iterable[MonthlyTruePortfolio]) -> list[MonthlyReturnPoint]:
    return [
        MonthlyReturnPoint(
            month=row.month,
            year=row.year,
            pl=row.pl,
            return_percent=row.pl / row.starting_capital * 100 if row.starting_capital else 0.0,
            final_capital=row.final_capital,
        )
        for row in monthly
    ]
