# ═══════════════════════════════════════════════════════════════════
# pnl.py - Per-leg and group-level P&L calculators
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations

import decimal as dec
from dataclasses import dataclass

from models import LONG_SIDES, SHORT_SIDES
from utils import ZERO, money, price

PERCENT_PLACES = dec.Decimal("0.0001")
HUNDRED = dec.Decimal("100")


@dataclass(frozen=True)
class PnlResult:
    pnl: dec.Decimal
    pnl_percent: dec.Decimal
    formula: str


def _percent(numerator: dec.Decimal, denominator: dec.Decimal) -> dec.Decimal:
    if denominator == 0:
        return ZERO
    return (numerator / denominator * HUNDRED).quantize(PERCENT_PLACES, rounding=dec.ROUND_HALF_UP)


def calculate_pnl(open_side, open_price, close_price, qty, multiplier=100, fees=ZERO) -> PnlResult | None:
    """Single-leg P&L. Returns None when direction or prices are unknown."""
    side = getattr(open_side, "value", open_side)
    if not side or open_price is None or close_price is None or not qty:
        return None
    fees = fees or ZERO

    if side in SHORT_SIDES:
        pnl = (open_price - close_price) * qty * multiplier - fees
        formula = f"({price(open_price)} - {price(close_price)}) × {qty} × {multiplier} - {money(fees)} = {money(pnl)}"
    elif side in LONG_SIDES:
        pnl = (close_price - open_price) * qty * multiplier - fees
        formula = f"({price(close_price)} - {price(open_price)}) × {qty} × {multiplier} - {money(fees)} = {money(pnl)}"
    else:
        return None

    cost = open_price * qty * multiplier
    pct = _percent(pnl, cost) if cost > 0 else ZERO
    return PnlResult(pnl=pnl, pnl_percent=pct, formula=formula)


def calculate_group_pnl(entry_credit_dollars, exit_debit_dollars, contracts, fees=ZERO) -> PnlResult:
    """Group P&L from dollar totals; contracts only appear in the formula"""
    fees = fees or ZERO
    pnl = entry_credit_dollars - exit_debit_dollars - fees
    pct = _percent(entry_credit_dollars - exit_debit_dollars, abs(entry_credit_dollars))
    formula = (
        f"${money(entry_credit_dollars)} - ${money(exit_debit_dollars)} - ${money(fees)}"
        f" = ${money(pnl)} [{contracts} contracts]"
    )
    return PnlResult(pnl=pnl, pnl_percent=pct, formula=formula)
