from __future__ import annotations

import logging
import time
from datetime import date, timedelta
from typing import Callable

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import create_config_manager
from .core.accounting import ledger_entries, trade_outcomes
from .core.aggregators import (
    monthly_pl_table,
    pl_by_setup,
    pl_by_symbol,
    pl_by_weekday,
    setup_frequency,
    top_performers,
)
from .core.capital_ledger import CapitalLedger
from .core.lot_resolver import has_blocking_issue, open_heat, resolve_trade, validate_trade
from .core.period_filter import filter_trades, period_bounds
from .core.risk_metrics import compute_risk_metrics, series_xirr, trade_statistics
from .models import (
    AccountingBasis,
    AnalyticsRequest,
    ApiErrorPayload,
    CapitalChange,
    CapitalChangesResponse,
    DeleteResponse,
    DistributionResponse,
    EngineConfig,
    JournalSettingsResponse,
    MonthlyOverrideRequest,
    MonthlyPortfolioRequest,
    MonthlySeriesResponse,
    MonthlyTruePortfolio,
    NewCapitalChangeRequest,
    PeriodFilter,
    PortfolioRequest,
    ResolveTradeResponse,
    RiskAnalyticsResponse,
    Trade,
    TradesResponse,
    ValidationIssue,
    YearlyCapitalRequest,
)
from .store import JournalStoreError, store
from .utils.month_utils import InvalidMonthError, month_index, month_key_of_text

logger = logging.getLogger(__name__)

config_manager = create_config_manager()

app = FastAPI(title="Trade journal API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:4173",
        "http://localhost:4173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_NOT_FOUND_CODES = {"TRADE_NOT_FOUND", "CAPITAL_CHANGE_NOT_FOUND"}


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ApiErrorPayload(code=code, message=message, trace_id=str(time.time_ns()))
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


@app.exception_handler(RequestValidationError)
def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    detail = exc.errors()[0].get("msg") if exc.errors() else "invalid request"
    return error_response(422, "VALIDATION_ERROR", str(detail))


@app.exception_handler(InvalidMonthError)
def handle_invalid_month(_: Request, exc: InvalidMonthError) -> JSONResponse:
    return error_response(400, "INVALID_MONTH", str(exc))


@app.exception_handler(JournalStoreError)
def handle_store_error(_: Request, exc: JournalStoreError) -> JSONResponse:
    status_code = 404 if exc.code in _NOT_FOUND_CODES else 400
    if exc.code == "PERSIST_FAILED":
        status_code = 500
    return error_response(status_code, exc.code, exc.message)


def _ledger(payload: PortfolioRequest, config: EngineConfig) -> CapitalLedger:
    return CapitalLedger(payload.settings, payload.capital_changes, config=config)


def _size_lookup(monthly: list[MonthlyTruePortfolio], default: float) -> Callable[[str], float]:
    """Portfolio size at the start of the month a date falls in."""
    sizes = {(row.year, month_index(row.month)): row.revised_starting_capital for row in monthly}

    def lookup(date_text: str) -> float:
        size = sizes.get(month_key_of_text(date_text))
        return size if size and size > 0 else default

    return lookup


def _resolve_response(trade: Trade, issues: list[ValidationIssue], portfolio_size: float) -> ResolveTradeResponse:
    resolved = resolve_trade(trade)
    return ResolveTradeResponse(
        resolved=resolved,
        issues=issues,
        can_persist=not has_blocking_issue(issues),
        open_heat=open_heat(trade, resolved, portfolio_size),
    )


def _journal_ledger(config: EngineConfig) -> CapitalLedger:
    return CapitalLedger(store.capital_settings(), store.list_capital_changes(), config=config)


def _journal_portfolio_size() -> float:
    config = config_manager.get_config()
    return _journal_ledger(config).latest_true_portfolio_size(store.list_trades(), config.default_basis)


def _months_in_period(
    monthly: list[MonthlyTruePortfolio],
    period: PeriodFilter,
) -> list[MonthlyTruePortfolio]:
    bounds = period_bounds(period)
    if bounds is None:
        return monthly
    start, end = bounds
    kept = []
    for row in monthly:
        idx = month_index(row.month)
        first = date(row.year, idx, 1)
        last = (date(row.year + 1, 1, 1) if idx == 12 else date(row.year, idx + 1, 1)) - timedelta(days=1)
        if first <= end and start <= last:
            kept.append(row)
    return kept


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/config", response_model=EngineConfig)
def get_config() -> EngineConfig:
    return config_manager.get_config()


@app.put("/api/config", response_model=EngineConfig)
def put_config(payload: EngineConfig) -> EngineConfig | JSONResponse:
    try:
        return config_manager.set_config(payload)
    except ValueError as exc:
        return error_response(400, "INVALID_CONFIG", str(exc))


@app.post("/api/trades/resolve", response_model=ResolveTradeResponse)
def post_resolve_trade(
    trade: Trade,
    portfolio_size: float | None = Query(default=None, gt=0),
) -> ResolveTradeResponse:
    size = portfolio_size or config_manager.get_config().default_portfolio_size
    return _resolve_response(trade, validate_trade(trade), size)


@app.post("/api/portfolio/monthly", response_model=MonthlyTruePortfolio)
def post_monthly_portfolio(payload: MonthlyPortfolioRequest) -> MonthlyTruePortfolio:
    ledger = _ledger(payload, config_manager.get_config())
    return ledger.monthly_portfolio(payload.month, payload.year, payload.trades, payload.basis)


@app.post("/api/portfolio/monthly-series", response_model=MonthlySeriesResponse)
def post_monthly_series(payload: PortfolioRequest) -> MonthlySeriesResponse:
    ledger = _ledger(payload, config_manager.get_config())
    items = ledger.all_monthly_portfolios(payload.trades, payload.basis)
    return MonthlySeriesResponse(
        basis=payload.basis,
        items=items,
        latest_portfolio_size=ledger.latest_true_portfolio_size(payload.trades, payload.basis),
        xirr_percent=series_xirr(items, payload.capital_changes),
    )


@app.post("/api/analytics/risk", response_model=RiskAnalyticsResponse)
def post_risk_analytics(payload: AnalyticsRequest) -> RiskAnalyticsResponse:
    config = config_manager.get_config()
    ledger = _ledger(payload, config)
    monthly = ledger.all_monthly_portfolios(payload.trades, payload.basis)
    in_period = filter_trades(payload.trades, payload.period, payload.basis)
    months = _months_in_period(monthly, payload.period)
    metrics = compute_risk_metrics(
        months,
        entries=ledger_entries(in_period, payload.basis),
        capital_changes=payload.capital_changes,
        config=config,
    )
    statistics = trade_statistics(
        trade_outcomes(in_period, payload.basis),
        in_period,
        portfolio_size_for=_size_lookup(monthly, config.default_portfolio_size),
        config=config,
    )
    return RiskAnalyticsResponse(
        basis=payload.basis,
        metrics=metrics,
        statistics=statistics,
        monthly_returns=monthly_pl_table(months),
    )


@app.post("/api/analytics/distribution", response_model=DistributionResponse)
def post_distribution(payload: AnalyticsRequest) -> DistributionResponse:
    config = config_manager.get_config()
    ledger = _ledger(payload, config)
    monthly = ledger.all_monthly_portfolios(payload.trades, payload.basis)
    in_period = filter_trades(payload.trades, payload.period, payload.basis)
    entries = ledger_entries(in_period, payload.basis)
    return DistributionResponse(
        basis=payload.basis,
        by_symbol=pl_by_symbol(entries),
        by_weekday=pl_by_weekday(entries),
        by_setup=pl_by_setup(entries, in_period),
        setup_frequency=setup_frequency(in_period),
        top_performers=top_performers(
            in_period,
            payload.metric,
            payload.basis,
            portfolio_size_for=_size_lookup(monthly, config.default_portfolio_size),
        ),
    )


@app.get("/api/journal/trades", response_model=TradesResponse)
def get_journal_trades() -> TradesResponse:
    items = store.list_trades()
    return TradesResponse(items=items, total=len(items))


@app.post("/api/journal/trades", response_model=ResolveTradeResponse)
def post_journal_trade(trade: Trade) -> ResolveTradeResponse:
    saved, issues = store.save_trade(trade)
    return _resolve_response(saved, issues, _journal_portfolio_size())


@app.get("/api/journal/trades/{trade_id}", response_model=ResolveTradeResponse)
def get_journal_trade(trade_id: str) -> ResolveTradeResponse:
    trade = store.get_trade(trade_id)
    return _resolve_response(trade, validate_trade(trade), _journal_portfolio_size())


@app.delete("/api/journal/trades/{trade_id}", response_model=DeleteResponse)
def delete_journal_trade(trade_id: str) -> DeleteResponse:
    remaining = store.delete_trade(trade_id)
    return DeleteResponse(deleted=True, remaining=remaining)


@app.get("/api/journal/capital-changes", response_model=CapitalChangesResponse)
def get_capital_changes() -> CapitalChangesResponse:
    items = store.list_capital_changes()
    return CapitalChangesResponse(items=items, total=len(items))


@app.post("/api/journal/capital-changes", response_model=CapitalChange)
def post_capital_change(payload: NewCapitalChangeRequest) -> CapitalChange:
    return store.add_capital_change(payload)


@app.put("/api/journal/capital-changes/{change_id}", response_model=CapitalChange)
def put_capital_change(change_id: str, payload: NewCapitalChangeRequest) -> CapitalChange:
    return store.update_capital_change(change_id, payload)


@app.delete("/api/journal/capital-changes/{change_id}", response_model=DeleteResponse)
def delete_capital_change(change_id: str) -> DeleteResponse:
    remaining = store.delete_capital_change(change_id)
    return DeleteResponse(deleted=True, remaining=remaining)


@app.get("/api/journal/settings", response_model=JournalSettingsResponse)
def get_journal_settings() -> JournalSettingsResponse:
    return JournalSettingsResponse(settings=store.capital_settings())


@app.put("/api/journal/yearly-capital", response_model=JournalSettingsResponse)
def put_yearly_capital(payload: YearlyCapitalRequest) -> JournalSettingsResponse:
    store.set_yearly_capital(payload.year, payload.starting_capital)
    return JournalSettingsResponse(settings=store.capital_settings())


@app.put("/api/journal/monthly-overrides", response_model=JournalSettingsResponse)
def put_monthly_override(payload: MonthlyOverrideRequest) -> JournalSettingsResponse:
    store.set_monthly_override(payload.month, payload.year, payload.starting_capital)
    return JournalSettingsResponse(settings=store.capital_settings())


@app.delete("/api/journal/monthly-overrides", response_model=JournalSettingsResponse)
def delete_monthly_override(
    month: str = Query(min_length=3),
    year: int = Query(ge=1900, le=2200),
) -> JournalSettingsResponse:
    store.remove_monthly_override(month, year)
    return JournalSettingsResponse(settings=store.capital_settings())


@app.get("/api/journal/portfolio", response_model=MonthlySeriesResponse)
def get_journal_portfolio(basis: AccountingBasis | None = Query(default=None)) -> MonthlySeriesResponse:
    config = config_manager.get_config()
    use_basis = basis or config.default_basis
    trades = store.list_trades()
    ledger = _journal_ledger(config)
    logger.debug(f"Computing journal portfolio for {len(trades)} trade(s) on {use_basis} basis")
    items = ledger.all_monthly_portfolios(trades, use_basis)
    return MonthlySeriesResponse(
        basis=use_basis,
        items=items,
        latest_portfolio_size=ledger.latest_true_portfolio_size(trades, use_basis),
        xirr_percent=series_xirr(items, ledger.capital_changes),
    )
