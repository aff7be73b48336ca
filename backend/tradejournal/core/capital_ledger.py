"""
Month-by-month reconstruction of portfolio capital.

Each month's starting capital is, in order of precedence: a monthly override,
the yearly starting capital when the month is the first month with any data,
or the previous month's final capital. The chain is evaluated as a forward
walk from the floor month, so every call builds its own month table and
nothing is cached between calls.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Iterable

from ..models import (
    AccountingBasis,
    CapitalChange,
    CapitalSettings,
    EngineConfig,
    LedgerEntry,
    MonthlyTruePortfolio,
    Trade,
)
from ..utils.month_utils import (
    InvalidMonthError,
    MonthKey,
    iter_months,
    month_index,
    month_key_of,
    month_name,
    parse_date,
)
from .accounting import entry_date, ledger_entries, pl_by_month

logger = logging.getLogger(__name__)


def _zero_month(key: MonthKey) -> MonthlyTruePortfolio:
    year, month = key
    return MonthlyTruePortfolio(
        month=month_name(month),
        year=year,
        starting_capital=0.0,
        capital_changes_net=0.0,
        revised_starting_capital=0.0,
        pl=0.0,
        final_capital=0.0,
    )


class CapitalLedger:
    """
    Capital ledger over caller-owned anchors.

    ``settings`` holds yearly starting capitals and monthly overrides,
    ``capital_changes`` the deposits and withdrawals. Neither is mutated.
    """

    def __init__(
        self,
        settings: CapitalSettings | None = None,
        capital_changes: Iterable[CapitalChange] | None = None,
        config: EngineConfig | None = None,
        today: date | None = None,
    ):
        self.settings = settings or CapitalSettings()
        self.capital_changes = list(capital_changes or [])
        self.config = config or EngineConfig()
        self.today = today or date.today()

    def _valid_key(self, date_text: str | None, what: str) -> MonthKey | None:
        parsed = parse_date(date_text)
        if parsed is None or not (self.config.min_valid_year <= parsed.year <= self.config.max_valid_year):
            if date_text:
                logger.warning(f"Ignoring invalid {what} date: {date_text}")
            return None
        return month_key_of(parsed)

    def _yearly_capitals(self) -> dict[int, float]:
        return {item.year: float(item.starting_capital) for item in self.settings.yearly_starting_capitals}

    def _overrides(self) -> dict[MonthKey, float]:
        table: dict[MonthKey, float] = {}
        for item in self.settings.monthly_overrides:
            try:
                key = (item.year, month_index(item.month))
            except InvalidMonthError:
                logger.warning(f"Ignoring monthly override with invalid month: {item.month!r}")
                continue
            table[key] = float(item.starting_capital)
        return table

    def _capital_changes_by_month(self) -> dict[MonthKey, float]:
        totals: dict[MonthKey, float] = defaultdict(float)
        for change in self.capital_changes:
            key = self._valid_key(change.date, "capital change")
            if key is None:
                continue
            amount = float(change.amount)
            totals[key] += amount if change.type == "deposit" else -amount
        return dict(totals)

    def _data_months(self, trades: list[Trade], entries: list[LedgerEntry], basis: AccountingBasis) -> list[MonthKey]:
        keys: list[MonthKey] = []
        for trade in trades:
            key = self._valid_key(trade.date, "entry")
            if key is not None:
                keys.append(key)
        if basis == "cash":
            for entry in entries:
                key = self._valid_key(entry_date(entry), "exit")
                if key is not None:
                    keys.append(key)
        for change in self.capital_changes:
            key = self._valid_key(change.date, "capital change")
            if key is not None:
                keys.append(key)
        return keys

    def _has_data(self, trades: list[Trade], basis: AccountingBasis) -> bool:
        if self.settings.yearly_starting_capitals or self._overrides():
            return True
        return bool(self._data_months(trades, ledger_entries(trades, basis), basis))

    def _floor(self, data_months: list[MonthKey]) -> MonthKey:
        candidates = list(data_months)
        for item in self.settings.yearly_starting_capitals:
            if self.config.min_valid_year <= item.year <= self.config.max_valid_year:
                candidates.append((item.year, 1))
            else:
                logger.warning(f"Ignoring yearly starting capital with invalid year: {item.year}")
        if not candidates:
            return (self.today.year, 1)
        return min(candidates)

    def _walk(
        self,
        floor: MonthKey,
        end: MonthKey,
        entries: list[LedgerEntry],
    ) -> list[MonthlyTruePortfolio]:
        """Dense month table from floor to end inclusive."""
        yearly = self._yearly_capitals()
        overrides = self._overrides()
        changes = self._capital_changes_by_month()
        pl_table = pl_by_month(entries)
        logger.debug(f"Walking capital ledger from {floor} to {end}")

        rows: list[MonthlyTruePortfolio] = []
        previous_final = 0.0
        for key in iter_months(floor, end):
            if key in overrides:
                starting = overrides[key]
            elif key == floor:
                starting = yearly.get(key[0], 0.0)
            else:
                starting = previous_final
            net = changes.get(key, 0.0)
            pl = pl_table.get(key, 0.0)
            revised = starting + net
            row = MonthlyTruePortfolio(
                month=month_name(key[1]),
                year=key[0],
                starting_capital=starting,
                capital_changes_net=net,
                revised_starting_capital=revised,
                pl=pl,
                final_capital=revised + pl,
            )
            rows.append(row)
            previous_final = row.final_capital
        return rows

    def monthly_portfolio(
        self,
        month: str,
        year: int,
        trades: Iterable[Trade] = (),
        basis: AccountingBasis = "accrual",
    ) -> MonthlyTruePortfolio:
        """
        Capital record for one month.

        Raises:
            InvalidMonthError: when ``month`` is not a recognizable month name
        """
        target = (int(year), month_index(month))
        trade_list = list(trades)
        entries = ledger_entries(trade_list, basis)
        floor = self._floor(self._data_months(trade_list, entries, basis))
        if target < floor:
            return _zero_month(target)
        return self._walk(floor, target, entries)[-1]

    def all_monthly_portfolios(
        self,
        trades: Iterable[Trade] = (),
        basis: AccountingBasis = "accrual",
        until: MonthKey | None = None,
    ) -> list[MonthlyTruePortfolio]:
        """Every month from the floor to the last data month (or the current month)."""
        trade_list = list(trades)
        entries = ledger_entries(trade_list, basis)
        data_months = self._data_months(trade_list, entries, basis)
        floor = self._floor(data_months)
        if until is not None:
            end = until
        elif data_months:
            end = max(data_months)
        else:
            end = month_key_of(self.today)
        if end < floor:
            return []
        return self._walk(floor, end, entries)

    def true_portfolio_size(
        self,
        month: str,
        year: int,
        trades: Iterable[Trade] = (),
        basis: AccountingBasis = "accrual",
    ) -> float:
        """
        Final capital for the month.

        The configured default size is used only when the ledger has no data
        at all: no trades, capital changes, yearly capitals or overrides.
        """
        trade_list = list(trades)
        record = self.monthly_portfolio(month, year, trade_list, basis)
        if not self._has_data(trade_list, basis):
            return float(self.config.default_portfolio_size)
        return record.final_capital

    def latest_true_portfolio_size(
        self,
        trades: Iterable[Trade] = (),
        basis: AccountingBasis = "accrual",
    ) -> float:
        return self.true_portfolio_size(month_name(self.today.month), self.today.year, trades, basis)


def get_monthly_portfolio(
    month: str,
    year: int,
    trades: Iterable[Trade],
    capital_changes: Iterable[CapitalChange],
    basis: AccountingBasis = "accrual",
    settings: CapitalSettings | None = None,
    config: EngineConfig | None = None,
    today: date | None = None,
) -> MonthlyTruePortfolio:
    ledger = CapitalLedger(settings, capital_changes, config=config, today=today)
    return ledger.monthly_portfolio(month, year, trades, basis)


def get_all_monthly_portfolios(
    trades: Iterable[Trade],
    capital_changes: Iterable[CapitalChange],
    basis: AccountingBasis = "accrual",
    settings: CapitalSettings | None = None,
    config: EngineConfig | None = None,
    today: date | None = None,
) -> list[MonthlyTruePortfolio]:
    ledger = CapitalLedger(settings, capital_changes, config=config, today=today)
    return ledger.all_monthly_portfolios(trades, basis)


def true_portfolio_size(
    month: str,
    year: int,
    trades: Iterable[Trade],
    capital_changes: Iterable[CapitalChange],
    basis: AccountingBasis = "accrual",
    settings: CapitalSettings | None = None,
    config: EngineConfig | None = None,
) -> float:
    ledger = CapitalLedger(settings, capital_changes, config=config)
    return ledger.true_portfolio_size(month, year, trades, basis)


def latest_true_portfolio_size(
    trades: Iterable[Trade],
    capital_changes: Iterable[CapitalChange],
    basis: AccountingBasis = "accrual",
    settings: CapitalSettings | None = None,
    config: EngineConfig | None = None,
    today: date | None = None,
) -> float:
    ledger = CapitalLedger(settings, capital_changes, config=config, today=today)
    return ledger.latest_true_portfolio_size(trades, basis)
