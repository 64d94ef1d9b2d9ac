import decimal as dec

from leg_sides import (
    LegInfo, compute_net_exit_debit, get_inferred_side, infer_iron_condor, infer_leg_sides,
    parse_option_symbol,
)
from models import Side

D = dec.Decimal


def ic_legs(with_exits=True):
    exits = {"C05900": "0.50", "C05950": "0.10", "P05650": "0.05", "P05700": "0.40"}
    entries = {"C05900": "2.00", "C05950": "0.80", "P05650": "0.70", "P05700": "1.80"}
    return [
        LegInfo(f"SPXW250117{k}000", D(entries[k]), D(exits[k]) if with_exits else None)
        for k in entries
    ]


def test_parse_option_symbol():
    parsed = parse_option_symbol("SPXW250117C05900000")
    assert parsed.root == "SPXW"
    assert parsed.expiry == "250117"
    assert parsed.option_type == "C"
    assert parsed.strike == D("5900")

    assert parse_option_symbol("SPY250117P00582500").strike == D("582.5")
    assert parse_option_symbol("SPY") is None
    assert parse_option_symbol("") is None


def test_iron_condor_sells_inner_strikes():
    result = infer_leg_sides(ic_legs(), "iron_condor")
    assert result.success
    sides = {l.symbol: l.open_side for l in result.legs}
    assert sides["SPXW250117C05900000"] == Side.SELL_TO_OPEN
    assert sides["SPXW250117C05950000"] == Side.BUY_TO_OPEN
    assert sides["SPXW250117P05700000"] == Side.SELL_TO_OPEN
    assert sides["SPXW250117P05650000"] == Side.BUY_TO_OPEN
    assert result.net_entry_credit == D("2.30")
    assert result.net_exit_debit == D("0.75")


def test_iron_condor_needs_two_calls_and_two_puts():
    legs = ic_legs()
    legs[2] = LegInfo("SPXW250117C06000000", D("0.2"))
    result = infer_iron_condor(legs)
    assert not result.success
    assert "2 calls and 2 puts" in result.error
    assert result.legs == []


def test_credit_put_spread_round_trip():
    legs = [
        LegInfo("SPY250117P00580000", D("0.50"), D("0.10")),
        LegInfo("SPY250117P00590000", D("2.00"), D("0.50")),
    ]
    result = infer_leg_sides(legs, "credit_put_spread")
    assert result.success
    assert result.method == "credit_put_spread"
    assert get_inferred_side(result, "SPY250117P00590000") == (Side.SELL_TO_OPEN, Side.BUY_TO_CLOSE)
    assert get_inferred_side(result, "SPY250117P00580000") == (Side.BUY_TO_OPEN, Side.SELL_TO_CLOSE)
    assert result.net_entry_credit == D("1.50")
    assert result.net_exit_debit == D("0.40")


def test_credit_call_spread_sells_lower_strike():
    legs = [
        LegInfo("SPY250117C00610000", D("0.40")),
        LegInfo("SPY250117C00600000", D("1.60")),
    ]
    result = infer_leg_sides(legs, "credit_call_spread")
    assert get_inferred_side(result, "SPY250117C00600000")[0] == Side.SELL_TO_OPEN
    assert get_inferred_side(result, "SPY250117C00610000")[0] == Side.BUY_TO_OPEN
    assert result.net_exit_debit is None


def test_butterfly_sells_the_body():
    legs = [
        LegInfo("SPY250117C00600000", D("5.00")),
        LegInfo("SPY250117C00605000", D("2.50"), ratio=2),
        LegInfo("SPY250117C00610000", D("1.00")),
    ]
    result = infer_leg_sides(legs, "butterfly")
    assert result.success
    assert [l.is_short for l in result.legs] == [False, True, False]
    assert result.net_entry_credit == D("-1.00")


def test_straddle_direction_is_ambiguous():
    legs = [
        LegInfo("SPY250117C00600000", D("5.00")),
        LegInfo("SPY250117P00600000", D("4.00")),
    ]
    result = infer_leg_sides(legs, "straddle")
    assert not result.success
    assert result.legs == []


def test_unknown_strategy_uses_premium_pattern():
    legs = [
        LegInfo("SPY250117P00580000", D("0.50")),
        LegInfo("SPY250117P00590000", D("2.00")),
    ]
    result = infer_leg_sides(legs, None)
    assert result.method == "premium_pattern"
    assert get_inferred_side(result, "SPY250117P00590000")[0] == Side.SELL_TO_OPEN


def test_premium_pattern_refuses_equal_premiums():
    legs = [
        LegInfo("SPY250117P00580000", D("1.00")),
        LegInfo("SPY250117P00590000", D("1.00")),
    ]
    assert not infer_leg_sides(legs, "custom").success


def test_unparseable_symbols_fail():
    assert not infer_leg_sides([LegInfo("GARBAGE", D("1")), LegInfo("NOPE", D("1"))], "credit_put_spread").success
    assert not infer_leg_sides([], "iron_condor").success


def test_net_exit_debit_needs_every_exit_price():
    result = infer_leg_sides(ic_legs(with_exits=False), "iron_condor")
    assert result.success
    assert compute_net_exit_debit(result.legs) is None
    assert get_inferred_side(result, "NOT-A-LEG") is None
