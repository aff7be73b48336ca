from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

TradeSide = Literal["Buy", "Sell"]
PositionStatus = Literal["Open", "Closed", "Partial"]
AccountingBasis = Literal["cash", "accrual"]
CapitalChangeType = Literal["deposit", "withdrawal"]
IssueLevel = Literal["warning", "error"]
PerformerMetric = Literal["stock_move", "pf_impact", "reward_risk", "pl"]
PeriodType = Literal["all", "week", "month", "cy", "fy", "custom"]

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}"


class EngineConfig(BaseModel):
    default_portfolio_size: float = 100_000.0
    annual_risk_free_rate: float = 0.05
    trading_days_per_year: int = 252
    rolling_volatility_window: int = 3
    sharpe_bound: float = 10.0
    sortino_bound: float = 10.0
    calmar_bound: float = 100.0
    profit_factor_cap: float = 999.0
    min_valid_year: int = 2000
    max_valid_year: int = 2100
    default_basis: AccountingBasis = "accrual"


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    trace_id: str | None = None


class TradeLot(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    quantity: int


class EntryLot(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float | None = None
    quantity: int | None = None
    date: str | None = None
    label: str = "entry"


class ExitLot(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float | None = None
    quantity: int | None = None
    date: str | None = None


class Trade(BaseModel):
    id: str
    trade_no: str = ""
    date: str = Field(pattern=DATE_PATTERN)
    symbol: str
    side: TradeSide = "Buy"
    entries: list[EntryLot] = Field(default_factory=list, max_length=3)
    exits: list[ExitLot] = Field(default_factory=list, max_length=3)
    stop_loss: float | None = None
    trailing_stop_loss: float | None = None
    current_market_price: float | None = None
    position_status: PositionStatus = "Open"
    setup: str = ""
    plan_followed: bool = False
    exit_trigger: str = ""
    notes: str = ""


class ValidationIssue(BaseModel):
    level: IssueLevel
    code: str
    message: str


class FifoMatch(BaseModel):
    matched_qty: int
    entry_price: float
    exit_price: float
    pl: float
    exit_index: int = 0


class ResolvedTrade(BaseModel):
    trade_id: str
    symbol: str
    side: TradeSide
    entry_date: str
    average_entry: float
    average_exit: float
    total_entered_quantity: int
    exited_quantity: int
    open_quantity: int
    realized_pl: float
    fifo_matches: list[FifoMatch] = Field(default_factory=list)
    position_size: float = 0.0
    stock_move_percent: float = 0.0
    reward_risk: float = 0.0
    unrealized_pl: float = 0.0
    holding_days: int = 0
    position_status: PositionStatus = "Open"
    derived_status: PositionStatus = "Open"
    warnings: list[ValidationIssue] = Field(default_factory=list)


class CashBasisExitRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_trade_id: str
    exit_index: int
    exit_date: str
    exit_qty: int
    exit_price: float
    pl: float


class AccrualEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["accrual"] = "accrual"
    trade_id: str
    symbol: str
    date: str
    pl: float


class CashExitEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["cash_exit"] = "cash_exit"
    original_trade_id: str
    symbol: str
    exit_index: int
    exit_date: str
    exit_qty: int
    exit_price: float
    pl: float


LedgerEntry = Annotated[Union[AccrualEntry, CashExitEntry], Field(discriminator="kind")]


class TradeOutcome(BaseModel):
    trade_id: str
    symbol: str
    date: str
    pl: float
    exit_count: int = 1


class YearlyStartingCapital(BaseModel):
    year: int = Field(ge=1900, le=2200)
    starting_capital: float
    updated_at: str = ""


class MonthlyStartingCapitalOverride(BaseModel):
    id: str = ""
    month: str
    year: int = Field(ge=1900, le=2200)
    starting_capital: float
    updated_at: str = ""


class CapitalChange(BaseModel):
    id: str
    date: str = Field(pattern=DATE_PATTERN)
    amount: float = Field(ge=0)
    type: CapitalChangeType
    description: str = ""


class CapitalSettings(BaseModel):
    yearly_starting_capitals: list[YearlyStartingCapital] = Field(default_factory=list)
    monthly_overrides: list[MonthlyStartingCapitalOverride] = Field(default_factory=list)


class MonthlyTruePortfolio(BaseModel):
    month: str
    year: int
    starting_capital: float
    capital_changes_net: float
    revised_starting_capital: float
    pl: float
    final_capital: float


class DrawdownPoint(BaseModel):
    month: str
    year: int
    capital: float
    pl: float
    pl_percent: float
    cumm_pf: float
    dd_from_peak: float
    max_drawdown_so_far: float
    is_new_peak: bool
    volatility: float
    recovery: float


class EquityPoint(BaseModel):
    date: str
    equity: float


class RiskMetrics(BaseModel):
    drawdown_curve: list[DrawdownPoint] = Field(default_factory=list)
    max_drawdown_pf: float = 0.0
    current_drawdown_pf: float = 0.0
    avg_volatility: float = 0.0
    new_peak_count: int = 0
    equity_curve: list[EquityPoint] = Field(default_factory=list)
    annualized_return: float = 0.0
    annualized_std_dev: float = 0.0
    annualized_downside_dev: float = 0.0
    risk_free_rate: float = 0.0
    max_drawdown_ratio: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0


class TradeStatistics(BaseModel):
    total_trades: int = 0
    win_count: int = 0
    loss_count: int = 0
    win_rate: float = 0.0
    gross_pl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    top_win: float = 0.0
    top_loss: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    win_streak: int = 0
    loss_streak: int = 0
    avg_win_hold_days: float = 0.0
    avg_loss_hold_days: float = 0.0
    plan_followed_percent: float = 0.0
    open_positions: int = 0


class PerformerRow(BaseModel):
    trade_id: str
    symbol: str
    value: float


class TopPerformers(BaseModel):
    metric: PerformerMetric
    highest: PerformerRow | None = None
    lowest: PerformerRow | None = None
    has_multiple_trades: bool = False


class GroupedPL(BaseModel):
    key: str
    pl: float
    trade_count: int


class MonthlyReturnPoint(BaseModel):
    month: str
    year: int
    pl: float
    return_percent: float
    final_capital: float


class PeriodFilter(BaseModel):
    type: PeriodType = "all"
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = Field(default=None, ge=1900, le=2200)
    fy_start_year: int | None = Field(default=None, ge=1900, le=2200)
    start_date: str | None = Field(default=None, pattern=DATE_PATTERN)
    end_date: str | None = Field(default=None, pattern=DATE_PATTERN)


class ResolveTradeResponse(BaseModel):
    resolved: ResolvedTrade
    issues: list[ValidationIssue]
    can_persist: bool
    open_heat: float = 0.0


class PortfolioRequest(BaseModel):
    trades: list[Trade] = Field(default_factory=list)
    capital_changes: list[CapitalChange] = Field(default_factory=list)
    settings: CapitalSettings = Field(default_factory=CapitalSettings)
    basis: AccountingBasis = "accrual"


class MonthlyPortfolioRequest(PortfolioRequest):
    month: str
    year: int


class MonthlySeriesResponse(BaseModel):
    basis: AccountingBasis
    items: list[MonthlyTruePortfolio]
    latest_portfolio_size: float
    xirr_percent: float = 0.0


class AnalyticsRequest(PortfolioRequest):
    period: PeriodFilter = Field(default_factory=PeriodFilter)
    metric: PerformerMetric = "pl"


class RiskAnalyticsResponse(BaseModel):
    basis: AccountingBasis
    metrics: RiskMetrics
    statistics: TradeStatistics
    monthly_returns: list[MonthlyReturnPoint] = Field(default_factory=list)


class DistributionResponse(BaseModel):
    basis: AccountingBasis
    by_symbol: list[GroupedPL] = Field(default_factory=list)
    by_weekday: list[GroupedPL] = Field(default_factory=list)
    by_setup: list[GroupedPL] = Field(default_factory=list)
    setup_frequency: list[GroupedPL] = Field(default_factory=list)
    top_performers: TopPerformers


class YearlyCapitalRequest(BaseModel):
    year: int = Field(ge=1900, le=2200)
    starting_capital: float


class MonthlyOverrideRequest(BaseModel):
    month: str
    year: int = Field(ge=1900, le=2200)
    starting_capital: float | None = None


class NewCapitalChangeRequest(BaseModel):
    date: str = Field(pattern=DATE_PATTERN)
    amount: float = Field(ge=0)
    type: CapitalChangeType
    description: str = ""


class TradesResponse(BaseModel):
    items: list[Trade]
    total: int


class CapitalChangesResponse(BaseModel):
    items: list[CapitalChange]
    total: int


class DeleteResponse(BaseModel):
    deleted: bool
    remaining: int


class JournalSettingsResponse(BaseModel):
    settings: CapitalSettings
