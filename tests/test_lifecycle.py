import datetime as dt
import decimal as dec

import pytest

from conftest import IRON_CONDOR, PUT_SPREAD
from errors import InvalidTransitionError, PersistenceError
from lifecycle import TransitionGuard
from models import CloseStatus, ExitPriceSource, FillEvent, LegFill, PnlStatus, Side

D = dec.Decimal


def submitted_group(add_group, symbols=IRON_CONDOR, order_id="900", **fields):
    fields.setdefault("strategy_type", "iron_condor")
    return add_group(symbols, close_status=CloseStatus.SUBMITTED, close_order_id=order_id,
                     needs_reconcile=True, **fields)


def ic_fill(order_id="900", filled_qty=1, leg_qty=1):
    prices = {
        IRON_CONDOR[0]: ("0.50", "buy_to_close"),
        IRON_CONDOR[1]: ("0.10", "sell_to_close"),
        IRON_CONDOR[2]: ("0.05", "sell_to_close"),
        IRON_CONDOR[3]: ("0.40", "buy_to_close"),
    }
    return FillEvent(
        symbol=IRON_CONDOR[0],
        order_id=order_id,
        avg_fill_price=D("0.75"),
        filled_qty=filled_qty,
        is_combo=True,
        timestamp="2025-01-17T15:30:00Z",
        leg_fills={s: LegFill(D(p), leg_qty, Side(side)) for s, (p, side) in prices.items()},
    )


# ── transition guard ────────────────────────────────────────────────

@pytest.mark.parametrize("current,target,allowed", [
    (CloseStatus.SUBMITTED, CloseStatus.FILLED, True),
    (CloseStatus.SUBMITTED, CloseStatus.TIMEOUT_UNKNOWN, True),
    (CloseStatus.TIMEOUT_UNKNOWN, CloseStatus.FILLED, True),
    (CloseStatus.TIMEOUT_UNKNOWN, CloseStatus.SUBMITTED, False),
    (CloseStatus.FILLED, CloseStatus.REJECTED, False),
    (CloseStatus.REJECTED, CloseStatus.FILLED, False),
    (CloseStatus.FILLED, CloseStatus.FILLED, True),
    (None, CloseStatus.CANCELED, True),
])
def test_transition_guard(current, target, allowed):
    assert TransitionGuard.can_transition(current, target)[0] is allowed


def test_terminal_state_reason():
    ok, reason = TransitionGuard.can_transition(CloseStatus.EXPIRED, CloseStatus.FILLED)
    assert not ok
    assert "terminal" in reason


def test_illegal_transition_raises(lifecycle, add_leg):
    leg = add_leg(PUT_SPREAD[0])
    with pytest.raises(InvalidTransitionError):
        lifecycle.transition(leg, CloseStatus.REJECTED)


# ── gating ──────────────────────────────────────────────────────────

def test_rejected_close_nulls_pnl_for_whole_group(store, handler, add_group):
    legs = submitted_group(add_group, PUT_SPREAD, strategy_type="credit_put_spread", pnl=D("55"))

    result = handler.handle(FillEvent(
        symbol=PUT_SPREAD[0], order_id="900", status=CloseStatus.REJECTED, reject_reason="insufficient margin",
    ))

    assert result.success
    assert result.legs_updated == 2
    for leg in store.legs():
        assert leg.close_status == CloseStatus.REJECTED
        assert leg.pnl is None
        assert leg.pnl_status == PnlStatus.PENDING
        assert leg.needs_reconcile
        assert leg.close_reject_reason == "insufficient margin"
    events = store.audit_events(legs[0].trade_group_id)
    assert events[-1].event_type == "close_rejected"
    assert events[-1].details.reason == "insufficient margin"


def test_rejected_group_stays_null_after_recompute(store, handler, recalculator, add_group):
    submitted_group(add_group, PUT_SPREAD, strategy_type="credit_put_spread", entry_credit="150")
    handler.handle(FillEvent(symbol=PUT_SPREAD[0], order_id="900", status=CloseStatus.CANCELED))

    recalculator.recalculate(force=True)

    assert all(l.pnl is None for l in store.legs())


def test_unknown_order_is_reported(handler):
    result = handler.handle(FillEvent(symbol="X", order_id="404"))
    assert not result.success


# ── fills ───────────────────────────────────────────────────────────

def test_combo_fill_computes_group_pnl(store, handler, add_group):
    submitted_group(add_group)
    store.set_group_entry_credit("g1", D("230"))

    result = handler.handle(ic_fill())

    assert result.success
    assert result.group_keys == ["g1"]
    primary = store.group_legs("g1")[0]
    assert primary.exit_debit_dollars == D("75")
    assert primary.entry_credit_dollars == D("230")
    assert primary.exit_price_source == ExitPriceSource.PER_LEG
    assert primary.pnl == D("155")
    assert primary.pnl_formula.endswith("[from actual fills]")
    sides = {l.symbol: l.open_side for l in store.legs()}
    assert sides[IRON_CONDOR[0]] == Side.SELL_TO_OPEN
    assert sides[IRON_CONDOR[1]] == Side.BUY_TO_OPEN
    assert all(l.close_status == CloseStatus.FILLED for l in store.legs())
    assert store.audit_events("g1")[0].event_type == "close_filled"


def test_combo_fill_quantity_equal_to_leg_count_is_one_contract(store, handler, add_group):
    submitted_group(add_group, quantity=4)
    store.set_group_entry_credit("g1", D("230"))

    handler.handle(ic_fill(filled_qty=4))

    assert all(l.quantity == 1 for l in store.legs())
    assert all(l.close_filled_qty == 1 for l in store.legs())


def test_combo_fill_without_leg_fills_uses_net_price(store, handler, add_group):
    submitted_group(add_group)
    event = ic_fill()
    event.leg_fills = {}

    handler.handle(event)

    primary = store.group_legs("g1")[0]
    assert primary.exit_price_source == ExitPriceSource.COMBO_NET
    assert primary.exit_debit == D("75")
    assert primary.exit_debit_dollars is None


def test_fill_during_recompute_is_deferred(store, handler, recalculator, add_group):
    submitted_group(add_group)
    store.set_group_entry_credit("g1", D("230"))
    recalculator.in_flight = True

    result = handler.handle(ic_fill())

    assert result.deferred == ["g1"]
    assert recalculator.deferred == {"g1"}
    assert all(l.pnl is None for l in store.legs())


def test_single_leg_fill(store, handler, add_leg):
    leg = add_leg(
        PUT_SPREAD[1], close_status=CloseStatus.SUBMITTED, close_order_id="31",
        entry_price=D("2.00"), needs_reconcile=True,
    )
    handler.handle(FillEvent(
        symbol=PUT_SPREAD[1], order_id="31", side=Side.BUY_TO_CLOSE,
        avg_fill_price=D("0.50"), filled_qty=1, fees=D("1.30"),
    ))

    row = store.get_leg(leg.id)
    assert row.open_side == Side.SELL_TO_OPEN
    assert row.close_side == Side.BUY_TO_CLOSE
    assert row.exit_price == D("0.50")
    assert row.pnl == D("148.70")
    assert not row.needs_reconcile


# ── timeouts ────────────────────────────────────────────────────────

def test_mark_timeouts(store, lifecycle, add_leg):
    old = add_leg(PUT_SPREAD[0], close_status=CloseStatus.SUBMITTED, close_submitted_at="2025-01-17T15:00:00Z")
    fresh = add_leg(PUT_SPREAD[1], close_status=CloseStatus.SUBMITTED, close_submitted_at="2025-01-17T15:09:30Z")

    transitions = lifecycle.mark_timeouts(now=dt.datetime(2025, 1, 17, 15, 10, tzinfo=dt.timezone.utc))

    assert [t.leg_id for t in transitions] == [old.id]
    assert store.get_leg(old.id).close_status == CloseStatus.TIMEOUT_UNKNOWN
    assert store.get_leg(old.id).close_reject_reason is None
    assert store.get_leg(fresh.id).close_status == CloseStatus.SUBMITTED


def test_resolve_timed_out_as_filled(store, lifecycle, add_leg):
    leg = add_leg(PUT_SPREAD[0], close_status=CloseStatus.TIMEOUT_UNKNOWN)

    transition = lifecycle.resolve_timed_out_trade(leg.id, "filled", {"avg_fill_price": "0.45", "filled_qty": 2})

    row = store.get_leg(leg.id)
    assert transition.to_status == CloseStatus.FILLED
    assert row.close_status == CloseStatus.FILLED
    assert row.exit_price == D("0.45")
    assert row.close_filled_qty == 2
    assert row.needs_reconcile
    assert store.audit_events()[-1].details.outcome == "filled"


def test_resolve_timed_out_as_open_deletes_row(store, lifecycle, add_leg):
    leg = add_leg(PUT_SPREAD[0], close_status=CloseStatus.TIMEOUT_UNKNOWN)
    assert lifecycle.resolve_timed_out_trade(leg.id, "open") is None
    assert store.get_leg(leg.id) is None


def test_resolve_rejects_bad_input(lifecycle, add_leg):
    leg = add_leg(PUT_SPREAD[0], close_status=CloseStatus.TIMEOUT_UNKNOWN)
    with pytest.raises(ValueError):
        lifecycle.resolve_timed_out_trade(leg.id, "maybe")
    with pytest.raises(PersistenceError):
        lifecycle.resolve_timed_out_trade("missing", "filled")


def test_small_combo_debit_is_kept_in_dollars(store, handler, add_group):
    submitted_group(add_group)
    store.set_group_entry_credit("g1", D("230"))
    event = ic_fill()
    event.leg_fills = {}
    event.avg_fill_price = D("0.03")

    handler.handle(event)

    primary = store.group_legs("g1")[0]
    assert primary.exit_debit == D("3")
    assert primary.pnl == D("227")
    assert "exit:existing_exit_debit_dollars" in primary.pnl_formula
