from __future__ import annotations

import math
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tradejournal.core.risk_metrics import (
    calmar_ratio,
    compute_risk_metrics,
    daily_equity_curve,
    daily_returns,
    drawdown_series,
    max_drawdown_ratio,
    series_xirr,
    trade_statistics,
    win_loss_streaks,
    xirr,
)
from tradejournal.models import (
    AccrualEntry,
    CapitalChange,
    EntryLot,
    ExitLot,
    MonthlyTruePortfolio,
    Trade,
    TradeOutcome,
)


def _month(month: str, starting: float, pl: float, year: int = 2024) -> MonthlyTruePortfolio:
    return MonthlyTruePortfolio(
        month=month,
        year=year,
        starting_capital=starting,
        capital_changes_net=0.0,
        revised_starting_capital=starting,
        pl=pl,
        final_capital=starting + pl,
    )


def _outcome(trade_id: str, pl: float, day: str = "2024-01-10") -> TradeOutcome:
    return TradeOutcome(trade_id=trade_id, symbol="abc", date=day, pl=pl)


def test_drawdown_is_zero_at_peaks_and_never_negative() -> None:
    series = [
        _month("Jan", 100_000, 10_000),
        _month("Feb", 110_000, -11_000),
        _month("Mar", 99_000, 4_950),
        _month("Apr", 103_950, 20_790),
    ]
    points = drawdown_series(series)

    assert [p.cumm_pf for p in points] == pytest.approx([10.0, 0.0, 5.0, 25.0])
    assert [p.dd_from_peak for p in points] == pytest.approx([0.0, 10.0, 5.0, 0.0])
    assert [p.is_new_peak for p in points] == [False, False, False, True]
    assert points[-1].max_drawdown_so_far == pytest.approx(10.0)
    assert all(p.dd_from_peak >= 0 for p in points)
    assert points[1].recovery == pytest.approx(0.0)


def test_monthly_return_ignores_capital_changes_of_the_month() -> None:
    deposit_month = MonthlyTruePortfolio(
        month="Jan",
        year=2024,
        starting_capital=100_000,
        capital_changes_net=100_000,
        revised_starting_capital=200_000,
        pl=10_000,
        final_capital=210_000,
    )
    seeded_month = MonthlyTruePortfolio(
        month="Feb",
        year=2024,
        starting_capital=0,
        capital_changes_net=50_000,
        revised_starting_capital=50_000,
        pl=5_000,
        final_capital=55_000,
    )
    points = drawdown_series([deposit_month, seeded_month])

    assert points[0].pl_percent == pytest.approx(10.0)
    assert points[0].cumm_pf == pytest.approx(10.0)
    assert points[1].pl_percent == 0.0
    assert points[1].cumm_pf == pytest.approx(10.0)
    assert points[1].dd_from_peak == 0.0


def test_rolling_volatility_needs_full_window() -> None:
    series = [_month("Jan", 100, 1), _month("Feb", 100, 3), _month("Mar", 100, 5)]
    points = drawdown_series(series)

    assert points[0].volatility == 0.0
    assert points[1].volatility == 0.0
    assert points[2].volatility == pytest.approx(math.sqrt(8 / 3))


def test_zero_starting_capital_month_has_zero_return() -> None:
    points = drawdown_series([_month("Jan", 0, 500)])
    assert points[0].pl_percent == 0.0
    assert points[0].recovery == 100.0


def test_streaks_reset_on_zero_pl() -> None:
    outcomes = [_outcome(str(i), pl) for i, pl in enumerate([5, 3, 0, 2, -1, -4, -2, 6])]
    assert win_loss_streaks(outcomes) == (2, 3)


def test_equity_curve_starts_from_first_deposit() -> None:
    changes = [CapitalChange(id="c1", date="2024-01-01", amount=10_000, type="deposit")]
    entries = [
        AccrualEntry(trade_id="t1", symbol="abc", date="2024-01-05", pl=1_000),
        AccrualEntry(trade_id="t2", symbol="abc", date="2024-01-09", pl=-2_200),
    ]
    curve = daily_equity_curve(entries, changes)

    assert [p.equity for p in curve] == pytest.approx([10_000, 11_000, 8_800])
    assert list(daily_returns(curve)) == pytest.approx([0.1, -0.2])
    assert max_drawdown_ratio(curve) == pytest.approx(0.2)


def test_equity_curve_without_deposit_uses_nominal_base() -> None:
    curve = daily_equity_curve([AccrualEntry(trade_id="t1", symbol="abc", date="2024-01-05", pl=100)])
    assert curve[0].equity == pytest.approx(1_100)


def test_ratios_are_bounded_and_finite() -> None:
    entries = [
        AccrualEntry(trade_id=str(i), symbol="abc", date=f"2024-01-{i + 2:02d}", pl=pl)
        for i, pl in enumerate([500, 800, 300, 900, 700])
    ]
    metrics = compute_risk_metrics([_month("Jan", 1_000, 3_200)], entries=entries)

    for value in (metrics.sharpe_ratio, metrics.sortino_ratio, metrics.calmar_ratio):
        assert math.isfinite(value)
    assert -10 <= metrics.sharpe_ratio <= 10
    assert -10 <= metrics.sortino_ratio <= 10
    assert -100 <= metrics.calmar_ratio <= 100
    assert metrics.calmar_ratio == 0.0
    assert metrics.sortino_ratio == 0.0
    assert metrics.annualized_return <= 10.0


def test_degenerate_inputs_give_zero_ratios() -> None:
    empty = compute_risk_metrics([], entries=[])
    single = compute_risk_metrics([_month("Jan", 0, 0)], entries=[AccrualEntry(trade_id="t", symbol="a", date="2024-01-02", pl=0)])

    for metrics in (empty, single):
        assert metrics.sharpe_ratio == 0.0
        assert metrics.sortino_ratio == 0.0
        assert metrics.calmar_ratio == 0.0
        assert metrics.max_drawdown_pf == 0.0


def test_calmar_without_drawdown_is_zero() -> None:
    assert calmar_ratio(0.3, 0.0) == 0.0
    assert calmar_ratio(-0.3, 0.0) == 0.0
    assert calmar_ratio(0.3, 0.1) == pytest.approx(3.0)


def test_trade_statistics_profit_factor_and_expectancy() -> None:
    outcomes = [_outcome("a", 2_000), _outcome("b", -1_000), _outcome("c", 3_000)]
    stats = trade_statistics(outcomes, portfolio_size_for=lambda _: 100_000)

    assert stats.total_trades == 3
    assert stats.win_rate == pytest.approx(200 / 3)
    assert stats.profit_factor == pytest.approx(5.0)
    assert stats.expectancy == pytest.approx(2.5 * 2 / 3 - 1.0 / 3)
    assert stats.top_win == 3_000
    assert stats.top_loss == -1_000
    assert stats.avg_loss == pytest.approx(1_000)


def test_profit_factor_without_losses_is_capped() -> None:
    stats = trade_statistics([_outcome("a", 100)])
    assert stats.profit_factor == 999.0
    assert stats.loss_streak == 0


def test_trade_statistics_hold_days_and_plan_followed() -> None:
    trade = Trade(
        id="a",
        date="2024-01-01",
        symbol="abc",
        entries=[EntryLot(price=10, quantity=10)],
        exits=[ExitLot(price=12, quantity=10, date="2024-01-11")],
        position_status="Closed",
        plan_followed=True,
    )
    open_trade = Trade(id="b", date="2024-01-03", symbol="xyz", entries=[EntryLot(price=5, quantity=1)])
    stats = trade_statistics([_outcome("a", 20, "2024-01-01")], [trade, open_trade])

    assert stats.avg_win_hold_days == pytest.approx(10.0)
    assert stats.plan_followed_percent == pytest.approx(100.0)
    assert stats.open_positions == 1


def test_xirr_simple_growth_and_degenerate_flows() -> None:
    rate = xirr("2023-01-01", 100_000, "2024-01-01", 110_000)
    assert rate == pytest.approx(10.0, abs=0.05)
    assert xirr("2023-01-01", 0, "2024-01-01", 110_000) == 0.0


def test_series_xirr_counts_deposits_as_invested_capital() -> None:
    grown = [_month("Jan", 100_000, 0, year=2023), _month("Dec", 100_000, 10_000, year=2023)]
    assert series_xirr(grown) == pytest.approx(10.0, abs=0.05)

    seeded = [
        MonthlyTruePortfolio(
            month="Jan",
            year=2023,
            starting_capital=0,
            capital_changes_net=100_000,
            revised_starting_capital=100_000,
            pl=0,
            final_capital=100_000,
        ),
        _month("Dec", 100_000, 10_000, year=2023),
    ]
    deposit = CapitalChange(id="d", date="2023-01-15", amount=100_000, type="deposit")
    outside = CapitalChange(id="late", date="2024-03-01", amount=5_000, type="deposit")
    assert series_xirr(seeded, [deposit, outside]) == pytest.approx(10.0, abs=0.05)
    assert series_xirr([]) == 0.0
