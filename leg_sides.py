# ═══════════════════════════════════════════════════════════════════
# leg_sides.py - Infer open/close sides of option legs from strikes
# ═══════════════════════════════════════════════════════════════════
"""
Leg side inference.

Broker rows frequently lose which legs were sold and which were bought.
For strategies whose shape implies direction, the strikes are enough:

- iron condor / iron fly: calls sold low and bought high, puts sold high
  and bought low
- credit put spread: higher strike sold
- credit call spread: lower strike sold
- butterfly: wings bought, body sold

Straddles and strangles can be long or short, so their shape says nothing
about direction. Anything else falls back to pairing legs into verticals
and treating the richer leg of each pair as the sold one.

All prices here are per share.
"""

from __future__ import annotations

import decimal as dec
import logging
import re
from dataclasses import dataclass, field

from models import Side
from utils import ZERO

logger = logging.getLogger(__name__)

OCC_SYMBOL = re.compile(r"^([A-Z]+)(\d{6})([CP])(\d{8})$")

SHORT = (Side.SELL_TO_OPEN, Side.BUY_TO_CLOSE)
LONG = (Side.BUY_TO_OPEN, Side.SELL_TO_CLOSE)

AMBIGUOUS_TYPES = {"straddle", "strangle"}


@dataclass(frozen=True)
class ParsedSymbol:
    root: str
    expiry: str
    option_type: str
    strike: dec.Decimal


@dataclass
class LegInfo:
    symbol: str
    entry_price: dec.Decimal
    exit_price: dec.Decimal | None = None
    ratio: int = 1


@dataclass
class InferredLeg:
    symbol: str
    entry_price: dec.Decimal
    exit_price: dec.Decimal | None
    ratio: int
    open_side: Side
    close_side: Side
    option_type: str
    strike: dec.Decimal

    @property
    def is_short(self) -> bool:
        return self.open_side == Side.SELL_TO_OPEN


@dataclass
class InferenceResult:
    success: bool
    legs: list[InferredLeg] = field(default_factory=list)
    net_entry_credit: dec.Decimal = ZERO
    net_exit_debit: dec.Decimal | None = None
    error: str | None = None
    method: str | None = None


def parse_option_symbol(symbol: str) -> ParsedSymbol | None:
    """Parse ROOT + YYMMDD + C|P + strike*1000 (8 digits)"""
    match = OCC_SYMBOL.match(symbol or "")
    if not match:
        return None
    root, expiry, option_type, strike = match.groups()
    return ParsedSymbol(root, expiry, option_type, dec.Decimal(int(strike)) / 1000)


def compute_net_exit_debit(legs: list[InferredLeg]) -> dec.Decimal | None:
    """Shorts pay their exit price back, longs collect it. None if any exit is missing."""
    if any(l.exit_price is None for l in legs):
        return None
    net = ZERO
    for leg in legs:
        amount = leg.exit_price * leg.ratio
        net += amount if leg.is_short else -amount
    return net


def _failure(error: str, method: str | None = None) -> InferenceResult:
    logger.debug("Leg side inference failed: %s", error)
    return InferenceResult(success=False, error=error, method=method)


def _build(assignments: list[tuple[LegInfo, ParsedSymbol, bool]], method: str) -> InferenceResult:
    inferred = []
    credit = ZERO
    for leg, parsed, short in assignments:
        open_side, close_side = SHORT if short else LONG
        inferred.append(InferredLeg(
            symbol=leg.symbol,
            entry_price=leg.entry_price,
            exit_price=leg.exit_price,
            ratio=leg.ratio,
            open_side=open_side,
            close_side=close_side,
            option_type=parsed.option_type,
            strike=parsed.strike,
        ))
        amount = (leg.entry_price or ZERO) * leg.ratio
        credit += amount if short else -amount
    return InferenceResult(
        success=True,
        legs=inferred,
        net_entry_credit=credit,
        net_exit_debit=compute_net_exit_debit(inferred),
        method=method,
    )


def _parse_all(legs: list[LegInfo]) -> list[tuple[LegInfo, ParsedSymbol]] | None:
    parsed = [(leg, parse_option_symbol(leg.symbol)) for leg in legs]
    if any(p is None for _, p in parsed):
        return None
    return parsed


def _split_by_type(parsed):
    by_strike = lambda item: item[1].strike
    calls = sorted((p for p in parsed if p[1].option_type == "C"), key=by_strike)
    puts = sorted((p for p in parsed if p[1].option_type == "P"), key=by_strike)
    return calls, puts


def infer_iron_condor(legs: list[LegInfo], method: str = "iron_condor") -> InferenceResult:
    """Iron condor and iron fly share the same topology"""
    if len(legs) != 4:
        return _failure(f"Expected 4 legs for {method}, got {len(legs)}", method)
    parsed = _parse_all(legs)
    if parsed is None:
        return _failure("Could not parse all leg symbols", method)
    calls, puts = _split_by_type(parsed)
    if len(calls) != 2 or len(puts) != 2:
        return _failure(f"Expected 2 calls and 2 puts, got {len(calls)} calls and {len(puts)} puts", method)

    return _build([
        (*calls[0], True),
        (*calls[1], False),
        (*puts[0], False),
        (*puts[1], True),
    ], method)


def infer_credit_spread(legs: list[LegInfo], option_type: str) -> InferenceResult:
    method = "credit_put_spread" if option_type == "P" else "credit_call_spread"
    if len(legs) != 2:
        return _failure(f"Expected 2 legs for credit spread, got {len(legs)}", method)
    parsed = _parse_all(legs)
    if parsed is None:
        return _failure("Could not parse all leg symbols", method)
    low, high = sorted(parsed, key=lambda item: item[1].strike)

    if option_type == "C":
        return _build([(*low, True), (*high, False)], method)
    return _build([(*low, False), (*high, True)], method)


def infer_butterfly(legs: list[LegInfo]) -> InferenceResult:
    """Wings bought, body sold. The body may be one leg with ratio 2."""
    method = "butterfly"
    if len(legs) != 3:
        return _failure(f"Expected 3 legs for butterfly, got {len(legs)}", method)
    parsed = _parse_all(legs)
    if parsed is None:
        return _failure("Could not parse all leg symbols", method)
    if len({p.option_type for _, p in parsed}) != 1:
        return _failure("Butterfly legs must share one option type", method)
    low, body, high = sorted(parsed, key=lambda item: item[1].strike)
    if not (low[1].strike < body[1].strike < high[1].strike):
        return _failure("Butterfly strikes must be distinct", method)
    return _build([(*low, False), (*body, True), (*high, False)], method)


def infer_by_premium(legs: list[LegInfo]) -> InferenceResult:
    """Pair legs into verticals; the richer leg of each vertical was sold"""
    method = "premium_pattern"
    parsed = _parse_all(legs)
    if parsed is None:
        return _failure("Could not parse all leg symbols", method)
    calls, puts = _split_by_type(parsed)

    if len(legs) == 2 and (len(calls) == 2 or len(puts) == 2):
        verticals = [calls or puts]
    elif len(legs) == 4 and len(calls) == 2 and len(puts) == 2:
        verticals = [calls, puts]
    else:
        return _failure(f"No vertical pairing for {len(calls)} calls and {len(puts)} puts", method)

    assignments = []
    for pair in verticals:
        (leg_a, parsed_a), (leg_b, parsed_b) = pair
        if leg_a.entry_price is None or leg_b.entry_price is None:
            return _failure("Entry prices required to infer direction from premium", method)
        if leg_a.entry_price == leg_b.entry_price:
            return _failure(f"Equal premiums on {leg_a.symbol} and {leg_b.symbol}", method)
        a_short = leg_a.entry_price > leg_b.entry_price
        assignments.append((leg_a, parsed_a, a_short))
        assignments.append((leg_b, parsed_b, not a_short))
    return _build(assignments, method)


def infer_leg_sides(legs: list[LegInfo], strategy_type: str | None) -> InferenceResult:
    """Infer sides for a group's legs; never defaults a direction on failure"""
    if not legs:
        return _failure("No legs to infer")

    if strategy_type in ("iron_condor", "iron_fly"):
        return infer_iron_condor(legs, strategy_type)
    if strategy_type == "credit_put_spread":
        return infer_credit_spread(legs, "P")
    if strategy_type == "credit_call_spread":
        return infer_credit_spread(legs, "C")
    if strategy_type == "butterfly":
        return infer_butterfly(legs)
    if strategy_type in AMBIGUOUS_TYPES:
        return _failure(f"Direction of a {strategy_type} is not implied by its strikes", strategy_type)
    return infer_by_premium(legs)


def get_inferred_side(result: InferenceResult, symbol: str) -> tuple[Side, Side] | None:
    """(open_side, close_side) for one symbol of a successful inference"""
    for leg in result.legs:
        if leg.symbol == symbol:
            return leg.open_side, leg.close_side
    return None
