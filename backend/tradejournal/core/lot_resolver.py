from __future__ import annotations

import logging
import math
from typing import Iterable

from ..models import (
    EntryLot,
    ExitLot,
    FifoMatch,
    PositionStatus,
    ResolvedTrade,
    Trade,
    TradeLot,
    TradeSide,
    ValidationIssue,
)
from ..utils.month_utils import days_between, parse_date

logger = logging.getLogger(__name__)

_ENTRY_LABELS = ("Initial entry", "Pyramid 1", "Pyramid 2")


def _is_priced(price: float | None) -> bool:
    return price is not None and math.isfinite(price) and price > 0


def _lot_label(kind: str, index: int) -> str:
    if kind == "entry":
        return _ENTRY_LABELS[index] if index < len(_ENTRY_LABELS) else f"Entry {index + 1}"
    return f"Exit {index + 1}"


def collect_lots(
    raw_lots: Iterable[EntryLot | ExitLot],
    kind: str,
    issues: list[ValidationIssue] | None = None,
) -> list[TradeLot]:
    """Keep lots with price>0 and quantity>0, flagging quantity-without-price lots."""
    lots: list[TradeLot] = []
    for idx, raw in enumerate(raw_lots):
        quantity = int(raw.quantity or 0)
        if quantity <= 0:
            continue
        if not _is_priced(raw.price):
            if issues is not None:
                issues.append(
                    ValidationIssue(
                        level="warning",
                        code="LOT_PRICE_MISSING",
                        message=f"{_lot_label(kind, idx)} has quantity but no price specified",
                    )
                )
            continue
        lots.append(TradeLot(price=float(raw.price), quantity=quantity))
    return lots


def average_price(lots: Iterable[TradeLot]) -> float:
    total_qty = 0
    total_value = 0.0
    for lot in lots:
        total_qty += lot.quantity
        total_value += lot.price * lot.quantity
    return total_value / total_qty if total_qty else 0.0


def signed_pl(side: TradeSide, quantity: float, entry_price: float, exit_price: float) -> float:
    if side == "Sell":
        return quantity * (entry_price - exit_price)
    return quantity * (exit_price - entry_price)


def fifo_match(
    entry_lots: list[TradeLot],
    exit_lots: list[TradeLot],
    side: TradeSide,
) -> tuple[list[FifoMatch], int]:
    """
    Match exit lots against the oldest remaining entry capacity.

    Returns the matched triples and the exit quantity that found no entry
    capacity. Inputs are not modified.
    """
    capacity = [[lot.price, lot.quantity] for lot in entry_lots]
    matches: list[FifoMatch] = []
    unmatched = 0
    cursor = 0
    for exit_index, exit_lot in enumerate(exit_lots):
        remaining = exit_lot.quantity
        while remaining > 0 and cursor < len(capacity):
            entry_price, available = capacity[cursor]
            take = min(available, remaining)
            if take > 0:
                matches.append(
                    FifoMatch(
                        matched_qty=take,
                        entry_price=entry_price,
                        exit_price=exit_lot.price,
                        pl=signed_pl(side, take, entry_price, exit_lot.price),
                        exit_index=exit_index,
                    )
                )
            capacity[cursor][1] = available - take
            remaining -= take
            if capacity[cursor][1] <= 0:
                cursor += 1
        unmatched += remaining
    return matches, unmatched


def realized_pl_fifo(entry_lots: list[TradeLot], exit_lots: list[TradeLot], side: TradeSide) -> float:
    matches, _ = fifo_match(entry_lots, exit_lots, side)
    return sum(item.pl for item in matches)


def derive_status(open_quantity: int, exited_quantity: int) -> PositionStatus:
    if open_quantity <= 0 and exited_quantity > 0:
        return "Closed"
    if exited_quantity > 0 and open_quantity > 0:
        return "Partial"
    return "Open"


def stock_move_percent(
    avg_entry: float,
    avg_exit: float,
    cmp: float | None,
    open_quantity: int,
    exited_quantity: int,
    status: PositionStatus,
    side: TradeSide = "Buy",
) -> float:
    if avg_entry <= 0 or open_quantity < 0 or exited_quantity < 0:
        return 0.0
    total = open_quantity + exited_quantity
    if total == 0:
        return 0.0
    if status == "Open":
        if not _is_priced(cmp):
            return 0.0
        move = (cmp - avg_entry) / avg_entry * 100
    elif status == "Closed":
        if avg_exit <= 0:
            return 0.0
        move = (avg_exit - avg_entry) / avg_entry * 100
    else:
        if not _is_priced(cmp) or avg_exit <= 0:
            return 0.0
        realized = (avg_exit - avg_entry) / avg_entry * 100
        unrealized = (cmp - avg_entry) / avg_entry * 100
        move = (realized * exited_quantity + unrealized * open_quantity) / total
    return -move if side == "Sell" else move


def reward_risk(
    target: float,
    entry: float,
    stop_loss: float | None,
    status: PositionStatus,
    avg_exit: float,
    open_quantity: int,
    exited_quantity: int,
    side: TradeSide = "Buy",
) -> float:
    if entry <= 0 or not _is_priced(stop_loss):
        return 0.0
    total = open_quantity + exited_quantity
    if total == 0:
        return 0.0
    risk = abs(entry - stop_loss)
    if risk == 0:
        return 0.0

    def _reward(price: float) -> float:
        return price - entry if side == "Buy" else entry - price

    if status == "Open":
        reward = _reward(target)
    elif status == "Closed":
        reward = _reward(avg_exit)
    else:
        reward = (_reward(avg_exit) * exited_quantity + _reward(target) * open_quantity) / total
    return abs(reward / risk)


def unrealized_pl(avg_entry: float, cmp: float | None, open_quantity: int, side: TradeSide) -> float:
    if not open_quantity or avg_entry <= 0 or not _is_priced(cmp):
        return 0.0
    return signed_pl(side, open_quantity, avg_entry, cmp)


def portfolio_impact(pl: float, portfolio_size: float) -> float:
    if not portfolio_size:
        return 0.0
    return pl / portfolio_size * 100


def earliest_exit_date(trade: Trade) -> str | None:
    dated = [
        lot.date
        for lot in trade.exits
        if int(lot.quantity or 0) > 0 and parse_date(lot.date) is not None
    ]
    if not dated:
        return None
    return min(dated, key=lambda text: parse_date(text))


def holding_days(trade: Trade, status: PositionStatus) -> int:
    if status == "Open" and not any(int(lot.quantity or 0) > 0 for lot in trade.exits):
        return 0
    first_exit = earliest_exit_date(trade)
    if first_exit is None:
        return 0
    return days_between(trade.date, first_exit)


def resolve_trade(trade: Trade) -> ResolvedTrade:
    """Compute every derived field of a trade. Data problems become warnings."""
    warnings: list[ValidationIssue] = []
    entry_lots = collect_lots(trade.entries, "entry", warnings)
    exit_lots = collect_lots(trade.exits, "exit", warnings)

    avg_entry = average_price(entry_lots)
    avg_exit = average_price(exit_lots)
    total_entered = sum(lot.quantity for lot in entry_lots)
    exited = sum(lot.quantity for lot in exit_lots)
    open_quantity = max(0, total_entered - exited)

    matches, unmatched = fifo_match(entry_lots, exit_lots, trade.side)
    if unmatched > 0:
        warnings.append(
            ValidationIssue(
                level="warning",
                code="EXIT_EXCEEDS_ENTRY",
                message=f"Exit quantity ({exited}) exceeds entered quantity ({total_entered})",
            )
        )
    realized = sum(item.pl for item in matches) if exited > 0 else 0.0

    if warnings:
        logger.warning(f"Trade {trade.id} resolved with {len(warnings)} warning(s)")

    derived = derive_status(open_quantity, exited)
    first_entry_price = entry_lots[0].price if entry_lots else 0.0
    target = trade.current_market_price if _is_priced(trade.current_market_price) else (avg_exit or first_entry_price)
    return ResolvedTrade(
        trade_id=trade.id,
        symbol=trade.symbol.strip().upper(),
        side=trade.side,
        entry_date=trade.date[:10],
        average_entry=avg_entry,
        average_exit=avg_exit,
        total_entered_quantity=total_entered,
        exited_quantity=exited,
        open_quantity=open_quantity,
        realized_pl=realized,
        fifo_matches=matches,
        position_size=avg_entry * total_entered,
        stock_move_percent=stock_move_percent(
            avg_entry,
            avg_exit,
            trade.current_market_price,
            open_quantity,
            exited,
            trade.position_status,
            trade.side,
        ),
        reward_risk=reward_risk(
            target,
            first_entry_price,
            trade.stop_loss,
            trade.position_status,
            avg_exit,
            open_quantity,
            exited,
            trade.side,
        ),
        unrealized_pl=unrealized_pl(avg_entry, trade.current_market_price, open_quantity, trade.side),
        holding_days=holding_days(trade, trade.position_status),
        position_status=trade.position_status,
        derived_status=derived,
        warnings=warnings,
    )


def open_heat(trade: Trade, resolved: ResolvedTrade, portfolio_size: float) -> float:
    """Risk of the open quantity to the active stop, as a percent of the portfolio."""
    if trade.position_status not in ("Open", "Partial"):
        return 0.0
    entry = resolved.average_entry
    quantity = resolved.open_quantity
    if _is_priced(trade.trailing_stop_loss):
        stop = float(trade.trailing_stop_loss)
    elif _is_priced(trade.stop_loss):
        stop = float(trade.stop_loss)
    else:
        return 0.0
    if entry <= 0 or quantity <= 0 or portfolio_size <= 0:
        return 0.0
    if trade.side == "Buy":
        if stop >= entry:
            return 0.0
        risk = (entry - stop) * quantity
    else:
        if stop <= entry:
            return 0.0
        risk = (stop - entry) * quantity
    return max(0.0, risk) / portfolio_size * 100


def validate_trade(trade: Trade) -> list[ValidationIssue]:
    """
    Check a trade before persistence.

    Errors block saving; warnings are advisory. Quantities are counted as
    entered, whether or not the lot carries a price.
    """
    issues: list[ValidationIssue] = []
    total_bought = sum(int(lot.quantity or 0) for lot in trade.entries)
    total_exited = sum(int(lot.quantity or 0) for lot in trade.exits)

    if total_exited > 0 and total_exited > total_bought:
        issues.append(
            ValidationIssue(
                level="error",
                code="EXIT_EXCEEDS_ENTRY",
                message=(
                    f"Exit quantity ({total_exited}) cannot be greater than bought quantity "
                    f"({total_bought}). Please check your pyramid and exit quantities."
                ),
            )
        )

    collect_lots(trade.entries, "entry", issues)
    collect_lots(trade.exits, "exit", issues)

    open_quantity = total_bought - total_exited
    if open_quantity > 0 and total_exited == 0:
        issues.append(
            ValidationIssue(
                level="warning",
                code="OPEN_WITHOUT_EXITS",
                message=f"Trade has open quantity ({open_quantity}) but no exit details entered",
            )
        )
    if open_quantity == 0 and total_exited > 0 and trade.position_status == "Open":
        issues.append(
            ValidationIssue(
                level="warning",
                code="STATUS_OPEN_BUT_EXITED",
                message='All quantity exited but status still marked as "Open"',
            )
        )
    if total_exited > 0 and open_quantity > 0 and trade.position_status == "Open":
        issues.append(
            ValidationIssue(
                level="warning",
                code="STATUS_NOT_PARTIAL",
                message='Trade has partial exits but status not marked as "Partial"',
            )
        )
    return issues


def has_blocking_issue(issues: Iterable[ValidationIssue]) -> bool:
    return any(item.level == "error" for item in issues)
