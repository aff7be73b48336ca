from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tradejournal.models import EntryLot, ExitLot, NewCapitalChangeRequest, Trade
from tradejournal.store import JournalStore, JournalStoreError
from tradejournal.utils.month_utils import InvalidMonthError


def _trade(trade_id: str = "t1", exit_qty: int = 10) -> Trade:
    return Trade(
        id=trade_id,
        date="2024-01-02",
        symbol="abc",
        entries=[EntryLot(price=100, quantity=10)],
        exits=[ExitLot(price=110, quantity=exit_qty, date="2024-01-20")],
        position_status="Closed",
    )


def test_store_persists_trades_changes_and_anchors(tmp_path: Path) -> None:
    state_path = tmp_path / "journal_state.json"

    store_a = JournalStore(state_path=str(state_path))
    store_a.save_trade(_trade())
    change = store_a.add_capital_change(NewCapitalChangeRequest(date="2024-01-01", amount=5_000, type="deposit"))
    store_a.set_yearly_capital(2024, 100_000)
    store_a.set_monthly_override("March", 2024, 80_000)
    assert state_path.exists()

    store_b = JournalStore(state_path=str(state_path))
    assert [t.id for t in store_b.list_trades()] == ["t1"]
    assert [c.id for c in store_b.list_capital_changes()] == [change.id]
    settings = store_b.capital_settings()
    assert [(item.year, item.starting_capital) for item in settings.yearly_starting_capitals] == [(2024, 100_000)]
    assert [(item.id, item.starting_capital) for item in settings.monthly_overrides] == [("Mar-2024", 80_000)]


def test_save_trade_replaces_by_id_and_refuses_blocking_issues(tmp_path: Path) -> None:
    store = JournalStore(state_path=str(tmp_path / "state.json"))
    store.save_trade(_trade())
    store.save_trade(_trade().model_copy(update={"symbol": "xyz"}))

    assert [t.symbol for t in store.list_trades()] == ["xyz"]
    with pytest.raises(JournalStoreError) as exc:
        store.save_trade(_trade("t2", exit_qty=15))
    assert exc.value.code == "TRADE_VALIDATION_FAILED"
    assert len(store.list_trades()) == 1


def test_delete_and_missing_records(tmp_path: Path) -> None:
    store = JournalStore(state_path=str(tmp_path / "state.json"))
    store.save_trade(_trade())
    change = store.add_capital_change(NewCapitalChangeRequest(date="2024-02-01", amount=100, type="withdrawal"))

    assert store.delete_trade("t1") == 0
    assert store.delete_capital_change(change.id) == 0
    with pytest.raises(JournalStoreError) as exc:
        store.delete_trade("t1")
    assert exc.value.code == "TRADE_NOT_FOUND"
    with pytest.raises(JournalStoreError):
        store.update_capital_change("missing", NewCapitalChangeRequest(date="2024-02-01", amount=1, type="deposit"))


def test_override_removal_and_invalid_month(tmp_path: Path) -> None:
    store = JournalStore(state_path=str(tmp_path / "state.json"))
    store.set_monthly_override("jan", 2024, 1_000)

    assert store.set_monthly_override("Jan", 2024, None) is None
    assert store.capital_settings().monthly_overrides == []
    assert store.remove_monthly_override("Jan", 2024) is False
    with pytest.raises(InvalidMonthError):
        store.set_monthly_override("Janvier", 2024, 1_000)


def test_corrupt_state_and_bad_records_are_recovered(tmp_path: Path) -> None:
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("[]", encoding="utf-8")
    assert JournalStore(state_path=str(corrupt)).list_trades() == []

    partial = tmp_path / "partial.json"
    partial.write_text(
        json.dumps(
            {
                "trades": [_trade().model_dump(), {"id": "broken"}],
                "capital_changes": "not-a-list",
            }
        ),
        encoding="utf-8",
    )
    store = JournalStore(state_path=str(partial))
    assert [t.id for t in store.list_trades()] == ["t1"]
    assert store.list_capital_changes() == []
    saved = json.loads(partial.read_text(encoding="utf-8"))
    assert saved["schema_version"] == 1


def test_failed_write_leaves_memory_unchanged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = JournalStore(state_path=str(tmp_path / "state.json"))
    store.save_trade(_trade())

    def _fail(state: dict[str, object]) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write_state", _fail)
    with pytest.raises(JournalStoreError) as exc:
        store.save_trade(_trade("t2"))
    assert exc.value.code == "PERSIST_FAILED"
    with pytest.raises(JournalStoreError):
        store.delete_trade("t1")
    with pytest.raises(JournalStoreError):
        store.set_yearly_capital(2024, 1_000)

    assert [t.id for t in store.list_trades()] == ["t1"]
    assert store.capital_settings().yearly_starting_capitals == []
    on_disk = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert [row["id"] for row in on_disk["trades"]] == ["t1"]
