import datetime as dt
import decimal as dec

from conftest import PUT_SPREAD
from fill_matcher import (
    BrokerOrder, find_matching_orders, import_missing_trades, reconcile_from_fills, reconcile_missing_fills,
)
from models import CloseStatus, LegRecord, PnlStatus, Side

D = dec.Decimal


def order(**fields):
    fields.setdefault("status", "filled")
    fields.setdefault("symbol", "SPY")
    return BrokerOrder.from_dict(fields)


def put_spread_close(order_id="C1"):
    return order(
        id=order_id, side="buy", quantity=1, **{"class": "multileg"},
        leg=[
            {"option_symbol": PUT_SPREAD[1], "side": "buy_to_close", "status": "filled",
             "avg_fill_price": "0.50", "exec_quantity": 1},
            {"option_symbol": PUT_SPREAD[0], "side": "sell_to_close", "status": "filled",
             "avg_fill_price": "0.10", "exec_quantity": 1},
        ],
    )


# ── matching ────────────────────────────────────────────────────────

def test_order_from_dict_accepts_single_leg_dict():
    o = BrokerOrder.from_dict({"id": 7, "status": "filled", "leg": {"option_symbol": PUT_SPREAD[0], "side": "sell_to_close"}})
    assert o.id == "7"
    assert len(o.legs) == 1
    assert o.touches(PUT_SPREAD[0])


def test_exact_close_order_match():
    leg = LegRecord(id="a", symbol=PUT_SPREAD[1], close_order_id="C1")
    match = find_matching_orders(leg, [put_spread_close("C0"), put_spread_close("C1")])
    assert match.close_order.id == "C1"
    assert match.close_match == "exact"
    assert match.open_order is None


def test_heuristic_match_respects_time_window():
    leg = LegRecord(id="a", symbol=PUT_SPREAD[1], quantity=1, exit_time="2025-01-17T15:00:00Z",
                    entry_time="2025-01-10T14:30:00Z")
    orders = [
        order(id="late", option_symbol=PUT_SPREAD[1], side="buy_to_close", avg_fill_price="0.40",
              exec_quantity=1, transaction_date="2025-01-17T18:00:00Z"),
        order(id="close", option_symbol=PUT_SPREAD[1], side="buy_to_close", avg_fill_price="0.50",
              exec_quantity=1, transaction_date="2025-01-17T15:05:00Z"),
        order(id="open", option_symbol=PUT_SPREAD[1], side="sell_to_open", avg_fill_price="2.00",
              exec_quantity=1, transaction_date="2025-01-10T14:31:00Z"),
        order(id="unfilled", option_symbol=PUT_SPREAD[1], side="buy_to_close", status="canceled",
              exec_quantity=1, transaction_date="2025-01-17T15:00:00Z"),
    ]

    match = find_matching_orders(leg, orders)

    assert match.close_order.id == "close"
    assert match.close_match == "heuristic"
    assert match.open_order.id == "open"


def test_heuristic_match_needs_similar_quantity():
    leg = LegRecord(id="a", symbol=PUT_SPREAD[1], quantity=5, exit_time="2025-01-17T15:00:00Z")
    orders = [order(id="x", option_symbol=PUT_SPREAD[1], side="buy_to_close", exec_quantity=1,
                    transaction_date="2025-01-17T15:00:00Z")]
    assert find_matching_orders(leg, orders).close_order is None


# ── reconcile from fills ────────────────────────────────────────────

def test_credit_put_spread_round_trip(store, cfg, recalculator, add_group):
    add_group(
        PUT_SPREAD, strategy_type="credit_put_spread", entry_credit="150",
        close_status=CloseStatus.SUBMITTED, close_order_id="C1", needs_reconcile=True,
        per_leg={PUT_SPREAD[0]: {"entry_price": D("0.50")}, PUT_SPREAD[1]: {"entry_price": D("2.00")}},
    )

    result = reconcile_from_fills(store, [put_spread_close()], cfg, recalculator)

    assert result.reconciled == 2
    assert result.errors == []
    assert result.groups == ["g1"]
    primary, sibling = store.group_legs("g1")
    assert (primary.open_side, primary.close_side) == (Side.BUY_TO_OPEN, Side.SELL_TO_CLOSE)
    assert (sibling.open_side, sibling.close_side) == (Side.SELL_TO_OPEN, Side.BUY_TO_CLOSE)
    assert primary.pnl == D("110")
    assert sibling.pnl == 0
    assert primary.close_status == CloseStatus.FILLED
    assert result.verified == 2
    assert result.total_pnl == D("110")
    assert store.audit_events("g1")[0].event_type == "reconciled"


def test_single_leg_reconcile_computes_pnl(store, cfg, add_leg):
    leg = add_leg(PUT_SPREAD[1], quantity=1, entry_price=D("2.00"), needs_reconcile=True,
                  exit_time="2025-01-17T15:00:00Z")
    orders = [order(id="55", option_symbol=PUT_SPREAD[1], side="buy_to_close", avg_fill_price="0.50",
                    exec_quantity=1, transaction_date="2025-01-17T15:05:00Z")]

    result = reconcile_from_fills(store, orders, cfg)

    row = store.get_leg(leg.id)
    assert result.reconciled == 1
    assert row.close_order_id == "55"
    assert row.open_side == Side.SELL_TO_OPEN
    assert row.pnl == D("150")
    assert row.pnl_status == PnlStatus.COMPUTED
    assert not row.needs_reconcile


def test_unmatched_rows_stay_unverified(store, cfg, add_leg):
    leg = add_leg(PUT_SPREAD[1], entry_price=D("2.00"), needs_reconcile=True, exit_time="2025-01-17T15:00:00Z")

    result = reconcile_from_fills(store, [], cfg)

    assert result.skipped == 1
    assert result.unverified == 1
    row = store.get_leg(leg.id)
    assert row.open_side is None
    assert row.pnl is None


# ── import missing trades ───────────────────────────────────────────

def test_import_missing_trades(store, cfg, add_leg):
    add_leg(PUT_SPREAD[0], close_order_id="known")
    orders = [
        order(id="o1", option_symbol=PUT_SPREAD[1], side="sell_to_open", avg_fill_price="2.00",
              exec_quantity=2, create_date="2025-01-10T14:30:00Z"),
        order(id="c1", option_symbol=PUT_SPREAD[1], side="buy_to_close", avg_fill_price="0.50",
              exec_quantity=2, create_date="2025-01-17T15:00:00Z"),
        order(id="known", option_symbol=PUT_SPREAD[0], side="sell_to_close", avg_fill_price="0.10",
              exec_quantity=1, create_date="2025-01-17T15:00:00Z"),
    ]

    result = import_missing_trades(store, orders, cfg)

    assert result.imported == 1
    row = store.find(PUT_SPREAD[1], "c1")
    assert row.underlying == "SPY"
    assert row.open_order_id == "o1"
    assert row.open_side == Side.SELL_TO_OPEN
    assert row.pnl == D("300")
    assert not row.needs_reconcile

    assert import_missing_trades(store, orders, cfg).imported == 0


def test_imported_close_without_open_needs_reconcile(store, cfg):
    orders = [order(id="c9", option_symbol=PUT_SPREAD[1], side="buy_to_close", avg_fill_price="0.50",
                    exec_quantity=1, create_date="2025-01-17T15:00:00Z")]

    import_missing_trades(store, orders, cfg)

    row = store.find(PUT_SPREAD[1], "c9")
    assert row.pnl is None
    assert row.needs_reconcile


# ── missing fills ───────────────────────────────────────────────────

def stuck_group(add_group, store):
    add_group(
        PUT_SPREAD, strategy_type="credit_put_spread", close_order_id="900",
        needs_reconcile=True, pnl_status=PnlStatus.MISSING_FILLS,
    )
    store.set_group_entry_credit("g1", D("150"))


def test_missing_fills_recovered_from_broker_status(store, handler, add_group):
    stuck_group(add_group, store)
    statuses = {"900": {
        "close_status": "filled",
        "avg_fill_price": "0.40",
        "filled_qty": 1,
        "leg_fills": {
            PUT_SPREAD[1]: {"avg_fill_price": "0.50", "filled_qty": 1, "side": "buy_to_close"},
            PUT_SPREAD[0]: {"avg_fill_price": "0.10", "filled_qty": 1, "side": "sell_to_close"},
        },
    }}

    result = reconcile_missing_fills(store, handler, statuses.get)

    assert result.recovered == 1
    assert result.still_missing == 0
    assert store.group_legs("g1")[0].pnl == D("110")


def test_missing_fills_lookup_failures_are_collected(store, handler, add_group):
    stuck_group(add_group, store)

    def broken(order_id):
        raise ConnectionError("broker offline")

    result = reconcile_missing_fills(store, handler, broken)

    assert result.recovered == 0
    assert result.still_missing == 1
    assert "broker offline" in result.errors[0]


def test_missing_fills_not_filled_at_broker(store, handler, add_group):
    stuck_group(add_group, store)
    result = reconcile_missing_fills(store, handler, {"900": {"close_status": "canceled"}}.get)
    assert result.still_missing == 1
    assert "not filled" in result.errors[0]
