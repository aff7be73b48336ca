"""
Risk metrics over the monthly capital series and the daily equity curve.

A zero or non-finite denominator yields 0 and every ratio is clamped to its
configured bound. NaN and infinity never reach a caller.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date
from typing import Callable, Iterable

import numpy as np

from ..models import (
    CapitalChange,
    DrawdownPoint,
    EngineConfig,
    EquityPoint,
    LedgerEntry,
    MonthlyTruePortfolio,
    RiskMetrics,
    Trade,
    TradeOutcome,
    TradeStatistics,
)
from ..utils.month_utils import month_index, month_key_of_text, next_month, parse_date
from .accounting import entry_date
from .lot_resolver import resolve_trade

logger = logging.getLogger(__name__)

_EPSILON = 1e-9
_EMPTY_PORTFOLIO_BASE = 1000.0


def _finite(value: float) -> float:
    return float(value) if math.isfinite(value) else 0.0


def _bounded(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(low, min(high, float(value)))


def _safe_ratio(numerator: float, denominator: float) -> float:
    if abs(denominator) < _EPSILON:
        return 0.0
    return _finite(numerator / denominator)


def drawdown_series(
    monthly: Iterable[MonthlyTruePortfolio],
    window: int = 3,
) -> list[DrawdownPoint]:
    """
    Cumulative portfolio-impact curve with drawdown, recovery and volatility.

    Monthly return is pl over the month's starting capital, before deposits
    and withdrawals (0 when that is 0).
    Drawdown is measured in percentage points below the running peak of the
    cumulative curve.
    """
    rows = list(monthly)
    if not rows:
        return []

    returns = np.array(
        [row.pl / row.starting_capital * 100 if row.starting_capital else 0.0 for row in rows],
        dtype=float,
    )
    cumm = np.cumsum(returns)
    running_max = np.maximum.accumulate(cumm)

    points: list[DrawdownPoint] = []
    peak = -math.inf
    max_dd = 0.0
    for idx, row in enumerate(rows):
        current = float(cumm[idx])
        is_new_peak = idx > 0 and current > peak
        peak = max(peak, current)
        dd = max(0.0, float(running_max[idx]) - current)
        max_dd = max(max_dd, dd)
        top = float(running_max[idx])
        recovery = current / top * 100 if top != 0 else 100.0
        volatility = 0.0
        if idx >= window - 1:
            volatility = float(np.std(returns[idx - window + 1 : idx + 1]))
        points.append(
            DrawdownPoint(
                month=row.month,
                year=row.year,
                capital=row.final_capital,
                pl=row.pl,
                pl_percent=float(returns[idx]),
                cumm_pf=current,
                dd_from_peak=dd,
                max_drawdown_so_far=max_dd,
                is_new_peak=is_new_peak,
                volatility=_finite(volatility),
                recovery=_finite(recovery),
            )
        )
    return points


def daily_equity_curve(
    entries: Iterable[LedgerEntry],
    capital_changes: Iterable[CapitalChange] = (),
    today: date | None = None,
) -> list[EquityPoint]:
    """
    Portfolio value on every date that carries a capital change or booked P/L.

    When the first date has no capital change the curve starts from a nominal
    base of 1000 so returns stay defined.
    """
    flows: dict[date, float] = defaultdict(float)
    change_dates: set[date] = set()
    for change in capital_changes:
        when = parse_date(change.date)
        if when is None:
            continue
        flows[when] += change.amount if change.type == "deposit" else -change.amount
        change_dates.add(when)
    for entry in entries:
        when = parse_date(entry_date(entry))
        if when is None:
            continue
        flows[when] += entry.pl

    if not flows:
        start = today or date.today()
        return [EquityPoint(date=start.isoformat(), equity=_EMPTY_PORTFOLIO_BASE)]

    ordered = sorted(flows)
    equity = 0.0 if ordered[0] in change_dates else _EMPTY_PORTFOLIO_BASE
    curve: list[EquityPoint] = []
    for when in ordered:
        equity += flows[when]
        curve.append(EquityPoint(date=when.isoformat(), equity=equity))
    return curve


def daily_returns(curve: list[EquityPoint]) -> np.ndarray:
    if len(curve) <= 1:
        return np.array([], dtype=float)
    values = np.array([point.equity for point in curve], dtype=float)
    previous = values[:-1]
    current = values[1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        result = np.where(previous != 0, (current - previous) / previous, 0.0)
    return np.nan_to_num(result, nan=0.0, posinf=0.0, neginf=0.0)


def sample_std(values: np.ndarray) -> float:
    if values.size < 2:
        return 0.0
    return _finite(float(np.std(values, ddof=1)))


def downside_deviation(values: np.ndarray, target: float = 0.0) -> float:
    """Root mean square of shortfalls below target, over all observations."""
    if values.size == 0:
        return 0.0
    shortfall = np.minimum(values - target, 0.0)
    return _finite(float(np.sqrt(np.mean(shortfall**2))))


def max_drawdown_ratio(curve: list[EquityPoint]) -> float:
    """Largest peak-to-trough decline as a fraction of the peak (positive peaks only)."""
    peak = -math.inf
    worst = 0.0
    for point in curve:
        peak = max(peak, point.equity)
        if peak > 0:
            worst = max(worst, (peak - point.equity) / peak)
    return worst


def sharpe_ratio(annual_return: float, risk_free: float, annual_std: float) -> float:
    return _safe_ratio(annual_return - risk_free, annual_std)


def sortino_ratio(annual_return: float, risk_free: float, annual_downside: float) -> float:
    return _safe_ratio(annual_return - risk_free, annual_downside)


def calmar_ratio(annual_return: float, max_drawdown: float) -> float:
    return _safe_ratio(annual_return, max_drawdown)


def win_loss_streaks(outcomes: Iterable[TradeOutcome]) -> tuple[int, int]:
    """Longest runs of winning and losing outcomes. A zero P/L ends both."""
    best_win = best_loss = 0
    win = loss = 0
    for outcome in outcomes:
        if outcome.pl > 0:
            win += 1
            loss = 0
        elif outcome.pl < 0:
            loss += 1
            win = 0
        else:
            win = loss = 0
        best_win = max(best_win, win)
        best_loss = max(best_loss, loss)
    return best_win, best_loss


def compute_risk_metrics(
    monthly: Iterable[MonthlyTruePortfolio],
    entries: Iterable[LedgerEntry] | None = None,
    capital_changes: Iterable[CapitalChange] | None = None,
    config: EngineConfig | None = None,
    today: date | None = None,
) -> RiskMetrics:
    cfg = config or EngineConfig()
    points = drawdown_series(monthly, window=cfg.rolling_volatility_window)
    metrics = RiskMetrics(drawdown_curve=points, risk_free_rate=cfg.annual_risk_free_rate)
    if points:
        metrics.max_drawdown_pf = max(point.dd_from_peak for point in points)
        metrics.current_drawdown_pf = points[-1].dd_from_peak
        metrics.avg_volatility = float(np.mean([point.volatility for point in points]))
        metrics.new_peak_count = sum(1 for point in points if point.is_new_peak)

    if entries is None:
        return metrics

    days = cfg.trading_days_per_year
    curve = daily_equity_curve(entries, capital_changes or (), today=today)
    returns = daily_returns(curve)
    daily_rf = (1 + cfg.annual_risk_free_rate) ** (1 / days) - 1

    annual_return = float(np.mean(returns)) * days if returns.size else 0.0
    annual_std = sample_std(returns) * math.sqrt(days)
    annual_downside = downside_deviation(returns, daily_rf) * math.sqrt(days)
    max_dd = max_drawdown_ratio(curve)

    sharpe = sharpe_ratio(annual_return, cfg.annual_risk_free_rate, annual_std)
    sortino = sortino_ratio(annual_return, cfg.annual_risk_free_rate, annual_downside)
    calmar = calmar_ratio(annual_return, max_dd)

    metrics.equity_curve = curve
    metrics.annualized_return = _bounded(annual_return, -1.0, 10.0)
    metrics.annualized_std_dev = _bounded(annual_std, 0.0, 5.0)
    metrics.annualized_downside_dev = _bounded(annual_downside, 0.0, 5.0)
    metrics.max_drawdown_ratio = _bounded(max_dd, 0.0, 1.0)
    metrics.sharpe_ratio = _bounded(sharpe, -cfg.sharpe_bound, cfg.sharpe_bound)
    metrics.sortino_ratio = _bounded(sortino, -cfg.sortino_bound, cfg.sortino_bound)
    metrics.calmar_ratio = _bounded(calmar, -cfg.calmar_bound, cfg.calmar_bound)
    return metrics


def trade_statistics(
    outcomes: list[TradeOutcome],
    trades: Iterable[Trade] = (),
    portfolio_size_for: Callable[[str], float] | None = None,
    config: EngineConfig | None = None,
) -> TradeStatistics:
    """
    Win/loss statistics over realized outcomes.

    ``portfolio_size_for`` maps an outcome date to the portfolio size used for
    its portfolio impact; without it the configured default size is used.
    Profit factor and expectancy are computed on portfolio impact.
    """
    cfg = config or EngineConfig()
    trade_list = list(trades)
    by_id = {trade.id: trade for trade in trade_list}
    stats = TradeStatistics(
        open_positions=sum(1 for trade in trade_list if trade.position_status in ("Open", "Partial")),
    )
    if not outcomes:
        return stats

    def _impact(outcome: TradeOutcome) -> float:
        size = portfolio_size_for(outcome.date) if portfolio_size_for else cfg.default_portfolio_size
        return outcome.pl / size * 100 if size else 0.0

    def _hold_days(outcome: TradeOutcome) -> int:
        trade = by_id.get(outcome.trade_id)
        return resolve_trade(trade).holding_days if trade is not None else 0

    wins = [item for item in outcomes if item.pl > 0]
    losses = [item for item in outcomes if item.pl < 0]
    total = len(outcomes)

    win_impact = sum(_impact(item) for item in wins)
    loss_impact = sum(abs(_impact(item)) for item in losses)
    win_rate = len(wins) / total
    loss_rate = len(losses) / total
    avg_win_impact = win_impact / len(wins) if wins else 0.0
    avg_loss_impact = loss_impact / len(losses) if losses else 0.0

    if loss_impact > 0:
        profit_factor = min(win_impact / loss_impact, cfg.profit_factor_cap)
    elif win_impact > 0:
        profit_factor = cfg.profit_factor_cap
    else:
        profit_factor = 0.0

    win_streak, loss_streak = win_loss_streaks(outcomes)
    followed = [by_id[item.trade_id].plan_followed for item in outcomes if item.trade_id in by_id]

    stats.total_trades = total
    stats.win_count = len(wins)
    stats.loss_count = len(losses)
    stats.win_rate = win_rate * 100
    stats.gross_pl = sum(item.pl for item in outcomes)
    stats.avg_win = sum(item.pl for item in wins) / len(wins) if wins else 0.0
    stats.avg_loss = sum(abs(item.pl) for item in losses) / len(losses) if losses else 0.0
    stats.top_win = max((item.pl for item in wins), default=0.0)
    stats.top_loss = min((item.pl for item in losses), default=0.0)
    stats.profit_factor = _finite(profit_factor)
    stats.expectancy = _finite(avg_win_impact * win_rate - avg_loss_impact * loss_rate)
    stats.win_streak = win_streak
    stats.loss_streak = loss_streak
    stats.avg_win_hold_days = float(np.mean([_hold_days(item) for item in wins])) if wins else 0.0
    stats.avg_loss_hold_days = float(np.mean([_hold_days(item) for item in losses])) if losses else 0.0
    stats.plan_followed_percent = sum(followed) / len(followed) * 100 if followed else 0.0
    return stats


def xirr(
    start_date: str,
    starting_capital: float,
    end_date: str,
    ending_capital: float,
    flows: Iterable[tuple[str, float]] = (),
) -> float:
    """
    Annualized internal rate of return in percent, by Newton iteration.

    The starting capital is booked as an outflow and the ending capital as an
    inflow. ``flows`` are (date, amount) cash flows in the same convention:
    deposits negative, withdrawals positive. Returns 0 when the flows never
    change sign.
    """
    start = parse_date(start_date)
    end = parse_date(end_date)
    if start is None or end is None:
        return 0.0

    cash_flows: list[tuple[date, float]] = [(start, -starting_capital)]
    for when_text, amount in flows:
        when = parse_date(when_text)
        if when is not None:
            cash_flows.append((when, amount))
    cash_flows.append((end, ending_capital))
    cash_flows.sort(key=lambda item: item[0])
    start = cash_flows[0][0]

    if not any(amount > 0 for _, amount in cash_flows) or not any(amount < 0 for _, amount in cash_flows):
        return 0.0

    years = np.array([(when - start).days / 365.0 for when, _ in cash_flows], dtype=float)
    amounts = np.array([amount for _, amount in cash_flows], dtype=float)
    rate = 0.1
    for _ in range(100):
        base = 1.0 + rate
        if base <= 0:
            return 0.0
        factors = base ** years
        value = float(np.sum(amounts / factors))
        derivative = float(np.sum(-years * amounts / (factors * base)))
        if abs(derivative) < _EPSILON:
            break
        next_rate = rate - value / derivative
        if not math.isfinite(next_rate):
            return 0.0
        if abs(next_rate - rate) < 1e-7:
            return float(next_rate) * 100
        rate = next_rate
    logger.debug("XIRR did not converge")
    return _finite(rate) * 100


def series_xirr(
    monthly: Iterable[MonthlyTruePortfolio],
    capital_changes: Iterable[CapitalChange] = (),
) -> float:
    """
    XIRR of a monthly capital series, in percent.

    The series runs from the first day of its first month, starting from that
    month's starting capital, to the first day after its last month, ending at
    that month's final capital. Capital changes inside the span are booked on
    the first day of their month.
    """
    rows = list(monthly)
    if not rows:
        return 0.0
    first, last = rows[0], rows[-1]
    start_key = (first.year, month_index(first.month))
    end_key = next_month((last.year, month_index(last.month)))

    flows: list[tuple[str, float]] = []
    for change in capital_changes:
        key = month_key_of_text(change.date)
        if key is None or not start_key <= key < end_key:
            continue
        amount = float(change.amount)
        flows.append((f"{key[0]:04d}-{key[1]:02d}-01", -amount if change.type == "deposit" else amount))

    return xirr(
        f"{start_key[0]:04d}-{start_key[1]:02d}-01",
        first.starting_capital,
        f"{end_key[0]:04d}-{end_key[1]:02d}-01",
        last.final_capital,
        flows,
    )
