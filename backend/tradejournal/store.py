from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Callable
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from .core.lot_resolver import has_blocking_issue, validate_trade
from .models import (
    CapitalChange,
    CapitalSettings,
    MonthlyStartingCapitalOverride,
    NewCapitalChangeRequest,
    Trade,
    ValidationIssue,
    YearlyStartingCapital,
)
from .utils.month_utils import normalize_month

logger = logging.getLogger(__name__)

STATE_PATH_ENV = "TRADE_JOURNAL_STATE_PATH"


class JournalStoreError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _now_datetime() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class JournalStore:
    """
    JSON-file store for trades, capital changes and capital anchors.

    All access goes through one re-entrant lock; every mutation rewrites the
    state file through a temp file.
    """

    _SCHEMA_VERSION = 1
    _COLLECTIONS: dict[str, type[BaseModel]] = {
        "trades": Trade,
        "capital_changes": CapitalChange,
        "yearly_starting_capitals": YearlyStartingCapital,
        "monthly_overrides": MonthlyStartingCapitalOverride,
    }

    def __init__(
        self,
        state_path: str | None = None,
        now_datetime: Callable[[], str] = _now_datetime,
    ) -> None:
        self._now_datetime = now_datetime
        self._lock = RLock()
        raw_path = state_path or os.environ.get(STATE_PATH_ENV)
        self._state_path = Path(raw_path) if raw_path else self._default_state_path()
        self._state = self._load_or_init_state()

    @staticmethod
    def _default_state_path() -> Path:
        return Path.home() / ".trade-journal" / "journal_state.json"

    @property
    def state_path(self) -> Path:
        return self._state_path

    def _load_or_init_state(self) -> dict[str, object]:
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        state = self._empty_state()
        if self._state_path.exists():
            try:
                raw = json.loads(self._state_path.read_text(encoding="utf-8"))
                if not isinstance(raw, dict):
                    raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
                state = self._migrate_state(raw)
                logger.info(f"Loaded journal state from {self._state_path}")
            except (OSError, ValueError) as e:
                logger.error(f"Discarding unreadable journal state {self._state_path}: {e}")
        else:
            logger.info(f"No journal state at {self._state_path}, starting empty")
        self._write_state(state)
        return state

    def _empty_state(self) -> dict[str, object]:
        return {
            "schema_version": self._SCHEMA_VERSION,
            "trades": [],
            "capital_changes": [],
            "yearly_starting_capitals": [],
            "monthly_overrides": [],
            "audit": {"updated_at": self._now_datetime()},
        }

    def _migrate_state(self, raw: dict[str, object]) -> dict[str, object]:
        base = self._empty_state()
        for key, model in self._COLLECTIONS.items():
            value = raw.get(key)
            if not isinstance(value, list):
                continue
            kept: list[dict[str, object]] = []
            for item in value:
                try:
                    kept.append(model.model_validate(item).model_dump())
                except ValidationError as e:
                    logger.warning(f"Dropping invalid {key} record during migration: {e.error_count()} error(s)")
            base[key] = kept
        audit = raw.get("audit")
        if isinstance(audit, dict) and audit.get("updated_at"):
            base["audit"] = {"updated_at": str(audit["updated_at"])}
        return base

    def _write_state(self, state: dict[str, object]) -> None:
        tmp_path = self._state_path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(state, ensure_ascii=False, sort_keys=True, indent=2),
            encoding="utf-8",
        )
        tmp_path.replace(self._state_path)

    def _persist(self, **collections: list[dict[str, object]]) -> None:
        """Write the state with ``collections`` replaced; memory changes only after the write succeeds."""
        state = {**self._state, **collections, "audit": {"updated_at": self._now_datetime()}}
        try:
            self._write_state(state)
        except OSError as e:
            logger.error(f"Failed to persist journal state to {self._state_path}: {e}")
            raise JournalStoreError("PERSIST_FAILED", f"failed to write journal state: {e}") from e
        self._state = state

    def _rows(self, key: str) -> list[dict[str, object]]:
        rows = self._state.get(key)
        return list(rows) if isinstance(rows, list) else []

    # trades

    def list_trades(self) -> list[Trade]:
        with self._lock:
            trades = [Trade(**row) for row in self._rows("trades")]
        return sorted(trades, key=lambda item: (item.date, item.trade_no, item.id))

    def get_trade(self, trade_id: str) -> Trade:
        with self._lock:
            for row in self._rows("trades"):
                if row.get("id") == trade_id:
                    return Trade(**row)
        raise JournalStoreError("TRADE_NOT_FOUND", f"trade not found: {trade_id}")

    def save_trade(self, trade: Trade) -> tuple[Trade, list[ValidationIssue]]:
        """Insert or replace a trade. Trades with blocking issues are refused."""
        issues = validate_trade(trade)
        if has_blocking_issue(issues):
            message = "; ".join(item.message for item in issues if item.level == "error")
            raise JournalStoreError("TRADE_VALIDATION_FAILED", message)
        with self._lock:
            rows = self._rows("trades")
            payload = trade.model_dump()
            for idx, row in enumerate(rows):
                if row.get("id") == trade.id:
                    rows[idx] = payload
                    break
            else:
                rows.append(payload)
            self._persist(trades=rows)
        logger.info(f"Saved trade {trade.id} ({trade.symbol}) with {len(issues)} issue(s)")
        return trade, issues

    def delete_trade(self, trade_id: str) -> int:
        with self._lock:
            rows = self._rows("trades")
            remaining = [row for row in rows if row.get("id") != trade_id]
            if len(remaining) == len(rows):
                raise JournalStoreError("TRADE_NOT_FOUND", f"trade not found: {trade_id}")
            self._persist(trades=remaining)
            return len(remaining)

    # capital changes

    def list_capital_changes(self) -> list[CapitalChange]:
        with self._lock:
            changes = [CapitalChange(**row) for row in self._rows("capital_changes")]
        return sorted(changes, key=lambda item: item.date)

    def add_capital_change(self, payload: NewCapitalChangeRequest) -> CapitalChange:
        change = CapitalChange(id=uuid4().hex[:12], **payload.model_dump())
        with self._lock:
            self._persist(capital_changes=[*self._rows("capital_changes"), change.model_dump()])
        logger.info(f"Added {change.type} of {change.amount} on {change.date}")
        return change

    def update_capital_change(self, change_id: str, payload: NewCapitalChangeRequest) -> CapitalChange:
        change = CapitalChange(id=change_id, **payload.model_dump())
        with self._lock:
            rows = self._rows("capital_changes")
            for idx, row in enumerate(rows):
                if row.get("id") == change_id:
                    rows[idx] = change.model_dump()
                    self._persist(capital_changes=rows)
                    return change
        raise JournalStoreError("CAPITAL_CHANGE_NOT_FOUND", f"capital change not found: {change_id}")

    def delete_capital_change(self, change_id: str) -> int:
        with self._lock:
            rows = self._rows("capital_changes")
            remaining = [row for row in rows if row.get("id") != change_id]
            if len(remaining) == len(rows):
                raise JournalStoreError("CAPITAL_CHANGE_NOT_FOUND", f"capital change not found: {change_id}")
            self._persist(capital_changes=remaining)
            return len(remaining)

    # capital anchors

    def set_yearly_capital(self, year: int, starting_capital: float) -> YearlyStartingCapital:
        record = YearlyStartingCapital(
            year=year,
            starting_capital=float(starting_capital),
            updated_at=self._now_datetime(),
        )
        with self._lock:
            rows = [row for row in self._rows("yearly_starting_capitals") if row.get("year") != year]
            rows.append(record.model_dump())
            rows.sort(key=lambda row: int(row.get("year", 0)))
            self._persist(yearly_starting_capitals=rows)
        return record

    def set_monthly_override(self, month: str, year: int, starting_capital: float | None) -> MonthlyStartingCapitalOverride | None:
        """
        Set the starting capital override for a month; None removes it.

        Raises:
            InvalidMonthError: when ``month`` is not a recognizable month name
        """
        short = normalize_month(month)
        if starting_capital is None:
            self.remove_monthly_override(short, year)
            return None
        record = MonthlyStartingCapitalOverride(
            id=f"{short}-{year}",
            month=short,
            year=year,
            starting_capital=float(starting_capital),
            updated_at=self._now_datetime(),
        )
        with self._lock:
            rows = [row for row in self._rows("monthly_overrides") if row.get("id") != record.id]
            rows.append(record.model_dump())
            self._persist(monthly_overrides=rows)
        return record

    def remove_monthly_override(self, month: str, year: int) -> bool:
        key = f"{normalize_month(month)}-{year}"
        with self._lock:
            rows = self._rows("monthly_overrides")
            remaining = [row for row in rows if row.get("id") != key]
            if len(remaining) == len(rows):
                return False
            self._persist(monthly_overrides=remaining)
            return True

    def capital_settings(self) -> CapitalSettings:
        with self._lock:
            return CapitalSettings(
                yearly_starting_capitals=[YearlyStartingCapital(**row) for row in self._rows("yearly_starting_capitals")],
                monthly_overrides=[MonthlyStartingCapitalOverride(**row) for row in self._rows("monthly_overrides")],
            )

    def reset(self) -> None:
        with self._lock:
            self._persist(**{key: [] for key in self._COLLECTIONS})
        logger.info("Journal state reset")


store = JournalStore()
