from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tradejournal.core.lot_resolver import (
    fifo_match,
    has_blocking_issue,
    open_heat,
    portfolio_impact,
    resolve_trade,
    validate_trade,
)
from tradejournal.models import EntryLot, ExitLot, Trade, TradeLot


def _build_trade(
    entries: list[tuple[float | None, int | None]],
    exits: list[tuple[float | None, int | None, str | None]] | None = None,
    *,
    side: str = "Buy",
    status: str = "Closed",
    date: str = "2024-01-02",
    **extra: object,
) -> Trade:
    return Trade(
        id="t1",
        date=date,
        symbol="abc",
        side=side,
        entries=[EntryLot(price=price, quantity=qty) for price, qty in entries],
        exits=[ExitLot(price=price, quantity=qty, date=day) for price, qty, day in (exits or [])],
        position_status=status,
        **extra,
    )


def test_fifo_realized_pl_spans_entry_lots() -> None:
    trade = _build_trade([(100, 10), (110, 5)], [(120, 12, "2024-01-20")], status="Partial")
    resolved = resolve_trade(trade)

    assert resolved.realized_pl == pytest.approx(220.0)
    assert [(m.matched_qty, m.entry_price, m.exit_price) for m in resolved.fifo_matches] == [
        (10, 100.0, 120.0),
        (2, 110.0, 120.0),
    ]
    assert resolved.open_quantity == 3
    assert resolved.exited_quantity == 12
    assert resolved.derived_status == "Partial"


def test_fifo_match_handles_exits_split_across_one_entry() -> None:
    matches, unmatched = fifo_match(
        [TradeLot(price=50, quantity=30)],
        [TradeLot(price=55, quantity=10), TradeLot(price=45, quantity=20)],
        "Buy",
    )
    assert unmatched == 0
    assert [m.pl for m in matches] == [50.0, -100.0]
    assert [m.exit_index for m in matches] == [0, 1]


def test_sell_side_flips_sign() -> None:
    trade = _build_trade([(100, 10)], [(90, 10, "2024-01-05")], side="Sell")
    resolved = resolve_trade(trade)
    assert resolved.realized_pl == pytest.approx(100.0)
    assert resolved.stock_move_percent == pytest.approx(10.0)


def test_averages_and_holding_days() -> None:
    trade = _build_trade(
        [(100, 10), (110, 10)],
        [(120, 5, "2024-01-12"), (130, 15, "2024-01-22")],
    )
    resolved = resolve_trade(trade)

    assert resolved.average_entry == pytest.approx(105.0)
    assert resolved.average_exit == pytest.approx(127.5)
    assert resolved.position_size == pytest.approx(2100.0)
    assert resolved.holding_days == 10
    assert resolved.derived_status == "Closed"


def test_open_trade_without_exits_has_zero_holding_days() -> None:
    trade = _build_trade([(100, 10)], status="Open", current_market_price=110)
    resolved = resolve_trade(trade)

    assert resolved.holding_days == 0
    assert resolved.realized_pl == 0.0
    assert resolved.unrealized_pl == pytest.approx(100.0)
    assert resolved.stock_move_percent == pytest.approx(10.0)


def test_lot_without_price_is_excluded_with_warning() -> None:
    trade = _build_trade([(100, 10), (None, 5)], [(110, 10, "2024-01-09")])
    resolved = resolve_trade(trade)

    assert resolved.total_entered_quantity == 10
    assert resolved.average_entry == pytest.approx(100.0)
    assert resolved.realized_pl == pytest.approx(100.0)
    assert [w.code for w in resolved.warnings] == ["LOT_PRICE_MISSING"]


def test_unmatched_exit_quantity_is_flagged() -> None:
    trade = _build_trade([(100, 5)], [(110, 8, "2024-01-09")])
    resolved = resolve_trade(trade)

    assert resolved.realized_pl == pytest.approx(50.0)
    assert resolved.open_quantity == 0
    assert "EXIT_EXCEEDS_ENTRY" in [w.code for w in resolved.warnings]


def test_reward_risk_uses_exit_for_closed_trade() -> None:
    trade = _build_trade([(100, 10)], [(120, 10, "2024-01-09")], stop_loss=95)
    assert resolve_trade(trade).reward_risk == pytest.approx(4.0)


def test_validate_trade_blocks_exit_above_entry() -> None:
    trade = _build_trade([(100, 5)], [(110, 8, "2024-01-09")])
    issues = validate_trade(trade)

    assert has_blocking_issue(issues)
    assert issues[0].code == "EXIT_EXCEEDS_ENTRY"
    assert issues[0].level == "error"


def test_validate_trade_status_warnings() -> None:
    all_out = _build_trade([(100, 10)], [(110, 10, "2024-01-09")], status="Open")
    partial = _build_trade([(100, 10)], [(110, 4, "2024-01-09")], status="Open")
    no_exits = _build_trade([(100, 10)], status="Open")

    assert [i.code for i in validate_trade(all_out)] == ["STATUS_OPEN_BUT_EXITED"]
    assert [i.code for i in validate_trade(partial)] == ["STATUS_NOT_PARTIAL"]
    assert [i.code for i in validate_trade(no_exits)] == ["OPEN_WITHOUT_EXITS"]
    assert not has_blocking_issue(validate_trade(partial))


def test_open_heat_prefers_trailing_stop_and_ignores_wrong_side() -> None:
    trade = _build_trade([(100, 100)], status="Open", stop_loss=90, trailing_stop_loss=95)
    resolved = resolve_trade(trade)
    assert open_heat(trade, resolved, 100_000) == pytest.approx(0.5)

    above_entry = _build_trade([(100, 100)], status="Open", stop_loss=105)
    assert open_heat(above_entry, resolve_trade(above_entry), 100_000) == 0.0


def test_portfolio_impact_guards_zero_size() -> None:
    assert portfolio_impact(5000, 100_000) == pytest.approx(5.0)
    assert portfolio_impact(5000, 0) == 0.0
