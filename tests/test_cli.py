import decimal as dec
import json

import pytest
from typer.testing import CliRunner

from conftest import IRON_CONDOR, PUT_SPREAD
from ledger import app
from models import CloseStatus, LegRecord, PnlStatus
from persistence import LedgerStore

D = dec.Decimal

runner = CliRunner()


@pytest.fixture
def paths(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path / "trades.json", tmp_path / "config.yaml"


@pytest.fixture
def invoke(paths):
    book, config = paths

    def _invoke(*args, input=None):
        return runner.invoke(app, ["--book", str(book), "--config", str(config), *args], input=input)

    return _invoke


@pytest.fixture
def seeded(paths):
    store = LedgerStore(paths[0], "inbox", "archive")
    for i, symbol in enumerate(IRON_CONDOR):
        store.insert_leg(LegRecord(
            id=f"ic{i}", symbol=symbol, quantity=4, trade_group_id="g1", strategy_type="iron_condor",
            close_status=CloseStatus.FILLED, exit_debit=D("2.31"),
        ))
    store.set_group_entry_credit("g1", D("920"))
    return store


def reload(paths):
    return LedgerStore(paths[0], "inbox", "archive")


def test_empty_listing(invoke, paths):
    result = invoke("ls")
    assert result.exit_code == 0
    assert "No trades recorded" in result.output
    assert paths[1].exists()


def test_validate_default_config(invoke):
    result = invoke("mgmt", "validate")
    assert result.exit_code == 0
    assert "Configuration is valid" in result.output


def test_validate_bad_config(invoke, paths):
    paths[1].write_text("default_multiplier: 0\ntimezone: Nowhere/Land\n")
    result = invoke("mgmt", "validate")
    assert result.exit_code == 1
    assert "Unknown timezone" in result.output


def test_recalc_alias_updates_book(invoke, paths, seeded):
    result = invoke("recalc")

    assert result.exit_code == 0
    assert "P&L Recalculation" in result.output
    primary = reload(paths).group_legs("g1")[0]
    assert primary.pnl == D("-4")
    assert primary.pnl_status == PnlStatus.COMPUTED


def test_recalc_unknown_group_fails(invoke, seeded):
    result = invoke("mgmt", "recalc", "--trade-id", "nope")
    assert result.exit_code == 1


def test_stats_and_today(invoke, seeded):
    invoke("recalc")

    stats = invoke("stats")
    assert stats.exit_code == 0
    assert "Verified Trade Stats" in stats.output

    today = invoke("today")
    assert today.exit_code == 0
    assert "Realized today" in today.output


def test_save_pending_then_list(invoke, paths):
    args = ["trade", "save-pending", "--symbol", PUT_SPREAD[1], "--close-order-id", "88",
            "--close-side", "buy_to_close", "--entry-price", "2.00"]

    first = invoke(*args)
    second = invoke(*args)

    assert first.exit_code == 0
    assert "Pending close recorded" in first.output
    assert "already recorded" in second.output
    rows = reload(paths).legs()
    assert len(rows) == 1
    assert rows[0].close_status == CloseStatus.SUBMITTED
    assert invoke("trade", "pending").exit_code == 0


def test_resolve_open_deletes_row(invoke, paths):
    store = LedgerStore(paths[0], "inbox", "archive")
    store.insert_leg(LegRecord(id="t1", symbol=PUT_SPREAD[1], close_status=CloseStatus.TIMEOUT_UNKNOWN))

    result = invoke("trade", "resolve", "t1", "--outcome", "open", "--force")

    assert result.exit_code == 0
    assert reload(paths).get_leg("t1") is None


def test_resolve_bad_outcome(invoke, paths):
    store = LedgerStore(paths[0], "inbox", "archive")
    store.insert_leg(LegRecord(id="t1", symbol=PUT_SPREAD[1], close_status=CloseStatus.TIMEOUT_UNKNOWN))
    assert invoke("trade", "resolve", "t1", "--outcome", "maybe").exit_code == 1


def test_duplicates_listing(invoke, paths):
    store = LedgerStore(paths[0], "inbox", "archive")
    store.insert_leg(LegRecord(id="a", symbol=PUT_SPREAD[1], close_order_id="9", exit_time="2025-01-17T15:00:00Z"))
    store.insert_leg(LegRecord(id="b", symbol=PUT_SPREAD[1], close_order_id="9", exit_time="2025-01-17T15:01:00Z"))

    assert "Re-run with --delete" in invoke("mgmt", "dupes").output
    result = invoke("mgmt", "dupes", "--delete", "--force")

    assert result.exit_code == 0
    assert [l.id for l in reload(paths).legs()] == ["a"]


def test_reconcile_from_orders_file(invoke, paths, tmp_path):
    store = LedgerStore(paths[0], "inbox", "archive")
    store.insert_leg(LegRecord(
        id="s1", symbol=PUT_SPREAD[1], entry_price=D("2.00"), close_order_id="55",
        close_status=CloseStatus.SUBMITTED, needs_reconcile=True,
    ))
    orders = tmp_path / "orders.json"
    orders.write_text(json.dumps({"orders": {"order": {
        "id": 55, "status": "filled", "symbol": "SPY", "option_symbol": PUT_SPREAD[1],
        "side": "buy_to_close", "avg_fill_price": 0.5, "exec_quantity": 1,
    }}}))

    result = invoke("reconcile", str(orders))

    assert result.exit_code == 0
    row = reload(paths).get_leg("s1")
    assert row.pnl == D("150")
    assert row.close_status == CloseStatus.FILLED


def test_inbox_applies_fill_events(invoke, paths, tmp_path):
    store = LedgerStore(paths[0], "inbox", "archive")
    store.insert_leg(LegRecord(
        id="s1", symbol=PUT_SPREAD[1], entry_price=D("2.00"), close_order_id="31",
        close_status=CloseStatus.SUBMITTED, needs_reconcile=True,
    ))
    (tmp_path / "inbox").mkdir()
    (tmp_path / "inbox" / "fill.json").write_text(json.dumps({
        "symbol": PUT_SPREAD[1], "order_id": "31", "side": "buy_to_close",
        "avg_fill_price": "0.50", "filled_qty": 1,
    }))

    result = invoke("inbox")

    assert result.exit_code == 0
    assert reload(paths).get_leg("s1").pnl == D("150")
    assert (tmp_path / "archive" / "fill.json").exists()


def test_show_and_audit(invoke, seeded):
    invoke("recalc")

    shown = invoke("show", "g1")
    assert shown.exit_code == 0
    assert "Group Overview" in shown.output

    assert invoke("show", "missing").exit_code == 1
    assert invoke("audit").exit_code == 0
    assert "No groups to audit" in invoke("audit", "--problems").output


def test_error_code_listing(invoke):
    result = invoke("mgmt", "codes")
    assert result.exit_code == 0
    assert "MISSING_FILLS" in result.output
