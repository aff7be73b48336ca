"""
Accounting method adapter.

Accrual basis books a trade's whole realized P/L on its entry date. Cash
basis books each exit separately on the exit date, carrying the FIFO-matched
P/L of that exit lot. Both views are produced as ``LedgerEntry`` records so
the ledger and the analytics never re-sum a parent trade's aggregate P/L.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from ..models import (
    AccountingBasis,
    AccrualEntry,
    CashBasisExitRecord,
    CashExitEntry,
    LedgerEntry,
    Trade,
    TradeLot,
    TradeOutcome,
)
from ..utils.month_utils import MonthKey, month_index, month_key_of_text, parse_date
from .lot_resolver import collect_lots, fifo_match, resolve_trade

logger = logging.getLogger(__name__)


def _latest_dated_exit(trade: Trade) -> str | None:
    dated = [lot.date[:10] for lot in trade.exits if parse_date(lot.date) is not None]
    return max(dated) if dated else None


def explode_for_cash_basis(trade: Trade) -> list[CashBasisExitRecord]:
    """
    One record per priced exit lot, carrying the FIFO P/L matched to that lot.

    An exit lot without a usable date is booked at the latest dated exit of
    the trade, or at the entry date when no exit is dated. Open trades
    produce no records.
    """
    if trade.position_status == "Open":
        return []
    entry_lots = collect_lots(trade.entries, "entry")
    priced = [
        lot
        for lot in trade.exits
        if int(lot.quantity or 0) > 0 and lot.price is not None and lot.price > 0
    ]
    if not priced:
        return []

    exit_lots = [TradeLot(price=float(lot.price), quantity=int(lot.quantity)) for lot in priced]
    matches, _ = fifo_match(entry_lots, exit_lots, trade.side)
    pl_by_exit: dict[int, float] = defaultdict(float)
    for match in matches:
        pl_by_exit[match.exit_index] += match.pl

    fallback_date = _latest_dated_exit(trade) or trade.date[:10]
    records: list[CashBasisExitRecord] = []
    for idx, lot in enumerate(priced):
        if parse_date(lot.date) is None:
            logger.debug(f"Trade {trade.id} exit {idx + 1} has no date, booking it on {fallback_date}")
            exit_date = fallback_date
        else:
            exit_date = lot.date[:10]
        records.append(
            CashBasisExitRecord(
                original_trade_id=trade.id,
                exit_index=idx,
                exit_date=exit_date,
                exit_qty=exit_lots[idx].quantity,
                exit_price=exit_lots[idx].price,
                pl=pl_by_exit.get(idx, 0.0),
            )
        )
    return records


def trade_ledger_entries(trade: Trade, basis: AccountingBasis) -> list[LedgerEntry]:
    if trade.position_status == "Open":
        return []
    symbol = trade.symbol.strip().upper()
    if basis == "accrual":
        return [
            AccrualEntry(
                trade_id=trade.id,
                symbol=symbol,
                date=trade.date[:10],
                pl=resolve_trade(trade).realized_pl,
            )
        ]
    return [
        CashExitEntry(
            original_trade_id=trade.id,
            symbol=symbol,
            exit_index=record.exit_index,
            exit_date=record.exit_date,
            exit_qty=record.exit_qty,
            exit_price=record.exit_price,
            pl=record.pl,
        )
        for record in explode_for_cash_basis(trade)
    ]


def ledger_entries(trades: Iterable[Trade], basis: AccountingBasis) -> list[LedgerEntry]:
    entries: list[LedgerEntry] = []
    for trade in trades:
        entries.extend(trade_ledger_entries(trade, basis))
    return entries


def attributed_pl(trade: Trade, basis: AccountingBasis) -> float:
    """P/L this trade contributes under the given basis."""
    return sum(entry.pl for entry in trade_ledger_entries(trade, basis))


def relevant_date(trade: Trade, basis: AccountingBasis) -> str:
    """Entry date under accrual; latest exit date under cash (entry date if none)."""
    if basis == "accrual":
        return trade.date[:10]
    records = explode_for_cash_basis(trade)
    if records:
        return max(record.exit_date for record in records)
    return trade.date[:10]


def entry_date(entry: LedgerEntry) -> str:
    if isinstance(entry, CashExitEntry):
        return entry.exit_date
    return entry.date


def entry_trade_id(entry: LedgerEntry) -> str:
    if isinstance(entry, CashExitEntry):
        return entry.original_trade_id
    return entry.trade_id


def group_by_original_trade(entries: Iterable[LedgerEntry]) -> list[TradeOutcome]:
    """
    Collapse exploded exits back to one row per position.

    The row carries the summed P/L and the latest exit date. Rows are ordered
    by that date, ties kept in input order.
    """
    outcomes: dict[str, TradeOutcome] = {}
    for entry in entries:
        trade_id = entry_trade_id(entry)
        when = entry_date(entry)
        current = outcomes.get(trade_id)
        if current is None:
            outcomes[trade_id] = TradeOutcome(trade_id=trade_id, symbol=entry.symbol, date=when, pl=entry.pl)
            continue
        current.pl += entry.pl
        current.exit_count += 1
        if when > current.date:
            current.date = when
    return sorted(outcomes.values(), key=lambda item: item.date)


def trade_outcomes(trades: Iterable[Trade], basis: AccountingBasis) -> list[TradeOutcome]:
    return group_by_original_trade(ledger_entries(trades, basis))


def pl_by_month(entries: Iterable[LedgerEntry]) -> dict[MonthKey, float]:
    totals: dict[MonthKey, float] = defaultdict(float)
    for entry in entries:
        key = month_key_of_text(entry_date(entry))
        if key is None:
            continue
        totals[key] += entry.pl
    return dict(totals)


def entries_in_month(entries: Iterable[LedgerEntry], month: str, year: int) -> list[LedgerEntry]:
    key = (int(year), month_index(month))
    return [entry for entry in entries if month_key_of_text(entry_date(entry)) == key]


def pl_for_month(entries: Iterable[LedgerEntry], month: str, year: int) -> float:
    return sum(entry.pl for entry in entries_in_month(entries, month, year))
