# ═══════════════════════════════════════════════════════════════════
# resolvers.py - Recover group entry credit / exit debit in dollars
# ═══════════════════════════════════════════════════════════════════
"""
Entry credit and exit debit resolvers.

Stored values on leg rows were written by several generations of code and
their unit is not recorded: some are per-share combo prices, some dollar
totals, some per-leg dollars summed instead of netted. Each resolver walks
a fixed priority cascade and returns a ``Resolution`` naming the source it
used, so the group formula can carry a trace of how it was derived.

A resolver never invents a number. When nothing trustworthy is found the
source is ``unknown`` and the caller marks the group ``missing_fills``.
"""

from __future__ import annotations

import decimal as dec
import logging
import statistics
from dataclasses import dataclass, field

from config import threshold
from leg_sides import InferenceResult
from models import ExitPriceSource, LegRecord
from utils import ZERO, money, price, short_id

logger = logging.getLogger(__name__)

# Source tags, recorded in the formula trace
POSITION_GROUP_MAP = "position_group_map"
STORED_DOLLARS = "stored_dollars"
INFERRED_DOLLARS = "inferred_dollars"
CONVERTED_TO_DOLLARS = "existing_exit_debit_converted_to_dollars"
CORRECTED_FROM_SUMMED = "existing_exit_debit_corrected_from_summed_legs"
EXISTING_DOLLARS = "existing_exit_debit_dollars"
COMBO_EXIT_PRICE = "combo_exit_price_dollars"
PER_LEG_NET = "per_leg_net_dollars"
FALLBACK_PRIMARY = "fallback_primary_exit_price_dollars"
UNKNOWN = "unknown"

MIN_STORED_DEBIT = dec.Decimal("0.001")
MIN_EXIT_PRICE = dec.Decimal("0.001")
MIN_TRADED_PRICE = dec.Decimal("0.01")
RATIO_DEBIT_CEILING = dec.Decimal("5")
RATIO_ENTRY_FLOOR = dec.Decimal("10")
ABSOLUTE_DEBIT_CEILING = dec.Decimal("1")
PRICE_PROXIMITY = dec.Decimal("0.5")
SUMMED_MIN_DEBIT = dec.Decimal("100")
SUMMED_MIN_LEGS = 4
COMBO_MIN_LEGS = 4

# Fill callbacks write the combo debit in dollars and tag the row with one of these
FILL_DOLLAR_SOURCES = {ExitPriceSource.COMBO_NET, ExitPriceSource.PARTIAL}


@dataclass(frozen=True)
class Correction:
    """A stored value rescaled to dollars"""
    field: str
    original: dec.Decimal
    corrected: dec.Decimal
    rationale: str
    code: str = "UNIT_CORRECTED"


@dataclass(frozen=True)
class Resolution:
    value: dec.Decimal | None
    source: str
    rationale: str
    corrections: tuple[Correction, ...] = field(default_factory=tuple)

    @property
    def resolved(self) -> bool:
        return self.source != UNKNOWN and self.value is not None


def _unknown(rationale: str) -> Resolution:
    return Resolution(value=None, source=UNKNOWN, rationale=rationale)


def resolve_entry_credit(
    group_id: str,
    ledger_value: dec.Decimal | None,
    cached_value: dec.Decimal | None,
    inference: InferenceResult | None,
    contracts: int,
    multiplier: int,
    cfg: dict,
) -> Resolution:
    """Group entry credit in dollars: ledger, then cached dollars, then inference"""
    if ledger_value is not None and ledger_value > 0:
        logger.info("Group %s: entry credit from position group map: $%s", short_id(group_id), money(ledger_value))
        return Resolution(ledger_value, POSITION_GROUP_MAP, "authoritative group entry-credit ledger")

    min_dollars = threshold(cfg, "min_dollar_entry_credit")
    if cached_value is not None and cached_value > min_dollars:
        logger.info("Group %s: entry credit from stored dollars: $%s", short_id(group_id), money(cached_value))
        return Resolution(cached_value, STORED_DOLLARS, f"cached entry credit above ${money(min_dollars)}")
    if cached_value is not None and cached_value > 0:
        logger.warning(
            "Group %s: cached entry credit %s looks per-share, ignoring it",
            short_id(group_id), cached_value,
        )

    if inference is not None and inference.success and inference.net_entry_credit != 0:
        dollars = inference.net_entry_credit * contracts * multiplier
        logger.info(
            "Group %s: entry credit from inference: $%s (%s × %s × %s)",
            short_id(group_id), money(dollars), price(inference.net_entry_credit), contracts, multiplier,
        )
        return Resolution(
            dollars, INFERRED_DOLLARS,
            f"net entry credit {price(inference.net_entry_credit)} × {contracts} × {multiplier}",
        )

    return _unknown("no ledger value, cached dollars or inferable net credit")


def _looks_per_share(debit, exit_price, entry_credit, cfg) -> str | None:
    """Reason the stored debit looks like a per-share price, or None"""
    ceiling = threshold(cfg, "per_share_ceiling")
    if (
        exit_price is not None and exit_price > MIN_TRADED_PRICE and debit < ceiling
        and abs(debit - exit_price) / max(exit_price, MIN_TRADED_PRICE) < PRICE_PROXIMITY
    ):
        return f"close to per-share exit price {price(exit_price)}"
    if (
        debit < RATIO_DEBIT_CEILING and entry_credit is not None and entry_credit > RATIO_ENTRY_FLOOR
        and debit < entry_credit * threshold(cfg, "per_share_ratio")
    ):
        return f"tiny next to entry credit ${money(entry_credit)}"
    if MIN_TRADED_PRICE < debit < ABSOLUTE_DEBIT_CEILING:
        return "below one dollar"
    return None


def _looks_summed(debit, exit_price, leg_count, multiplier, cfg) -> bool:
    if leg_count < SUMMED_MIN_LEGS or debit <= SUMMED_MIN_DEBIT or exit_price is None:
        return False
    expected = exit_price * multiplier * leg_count
    return abs(debit - expected) < expected * threshold(cfg, "summed_tolerance")


def _recorded_in_dollars(leg: LegRecord) -> bool:
    return leg.exit_price_source in FILL_DOLLAR_SOURCES or (
        leg.exit_debit_dollars is not None and leg.exit_debit == leg.exit_debit_dollars
    )


def _from_stored_debits(legs, contracts, multiplier, entry_credit, cfg) -> Resolution | None:
    stored = [l for l in legs if l.exit_debit is not None and l.exit_debit > MIN_STORED_DEBIT]
    if not stored:
        return None
    first = stored[0]
    debit = first.exit_debit

    if _recorded_in_dollars(first):
        return Resolution(debit, EXISTING_DOLLARS, "exit debit recorded in dollars by a broker fill")

    reason = _looks_per_share(debit, first.exit_price, entry_credit, cfg)
    if reason:
        dollars = debit * contracts * multiplier
        logger.info("Converted per-share exit debit %s to $%s (%s)", price(debit), money(dollars), reason)
        return Resolution(
            dollars, CONVERTED_TO_DOLLARS, f"stored exit debit {reason}",
            (Correction("exit_debit", debit, dollars, reason),),
        )

    if _looks_summed(debit, first.exit_price, len(legs), multiplier, cfg):
        dollars = debit / len(legs)
        rationale = f"stored exit debit matches {len(legs)} summed per-leg values"
        logger.info("Corrected summed exit debit $%s ÷ %s legs to $%s", money(debit), len(legs), money(dollars))
        return Resolution(
            dollars, CORRECTED_FROM_SUMMED, rationale,
            (Correction("exit_debit", debit, dollars, rationale),),
        )

    dollars = statistics.median(sorted(l.exit_debit for l in stored))
    return Resolution(dollars, EXISTING_DOLLARS, f"median of {len(stored)} stored exit debits")


def _from_exit_prices(legs, contracts, multiplier, inference, cfg) -> Resolution:
    exit_prices = [l.exit_price for l in legs if l.exit_price is not None and l.exit_price > MIN_EXIT_PRICE]

    if len(exit_prices) < 2:
        primary_price = legs[0].exit_price
        if primary_price is None:
            return _unknown("no stored exit debit and no exit prices")
        return Resolution(
            primary_price * contracts * multiplier, FALLBACK_PRIMARY,
            f"primary exit price {price(primary_price)} × {contracts} × {multiplier}",
        )

    is_combo = max(exit_prices) - min(exit_prices) < threshold(cfg, "combo_price_tolerance")
    combo = Resolution(
        exit_prices[0] * contracts * multiplier, COMBO_EXIT_PRICE,
        f"combo net price {price(exit_prices[0])} duplicated across legs",
    )
    net = inference.net_exit_debit if inference is not None and inference.success else None

    if is_combo and len(legs) >= COMBO_MIN_LEGS:
        return combo
    if net is not None and abs(net) > MIN_EXIT_PRICE:
        return Resolution(
            net * contracts * multiplier, PER_LEG_NET,
            f"per-leg net exit {price(net)} × {contracts} × {multiplier}",
        )
    if not is_combo:
        if net is None:
            return _unknown("exit prices differ but leg directions are unknown")
        return Resolution(ZERO, PER_LEG_NET, "per-leg exits net to zero")
    return combo


def resolve_exit_debit(
    legs: list[LegRecord],
    contracts: int,
    multiplier: int,
    entry_credit: dec.Decimal | None,
    inference: InferenceResult | None,
    cfg: dict,
) -> Resolution:
    """Group exit debit in dollars; legs must be in primary order"""
    if not legs:
        return _unknown("no legs")

    resolution = _from_stored_debits(legs, contracts, multiplier, entry_credit, cfg)
    if resolution is None:
        resolution = _from_exit_prices(legs, contracts, multiplier, inference, cfg)

    if resolution.resolved and abs(resolution.value) < MIN_TRADED_PRICE:
        if any(l.exit_price is None for l in legs):
            logger.warning("Zero exit debit with incomplete fills (source=%s)", resolution.source)
            return _unknown(f"zero exit debit from {resolution.source} with legs missing exit prices")
    return resolution
