# ═══════════════════════════════════════════════════════════════════
# utils.py - Decimal, time and formatting helpers
# ═══════════════════════════════════════════════════════════════════

import datetime as dt
import decimal as dec

CENT = dec.Decimal("0.01")
PRICE_PLACES = dec.Decimal("0.0001")
ZERO = dec.Decimal("0")


def to_decimal(v) -> dec.Decimal | None:
    """Convert value to Decimal, handling None and existing Decimals"""
    if v is None or isinstance(v, dec.Decimal):
        return v
    if isinstance(v, float):
        return dec.Decimal(str(v))
    if isinstance(v, str) and not v.strip():
        return None
    return dec.Decimal(v)


def safe_to_decimal(value) -> dec.Decimal | None:
    """Convert any stored value to Decimal, returning None for garbage"""
    if isinstance(value, bool):
        return None
    try:
        return to_decimal(value)
    except (dec.InvalidOperation, ValueError, TypeError):
        return None


def money(value: dec.Decimal | None) -> str:
    """Format a dollar amount for formulas and tables"""
    if value is None:
        return "N/A"
    return f"{value.quantize(CENT, rounding=dec.ROUND_HALF_UP)}"


def price(value: dec.Decimal | None) -> str:
    """Format a per-share price with four decimals"""
    if value is None:
        return "N/A"
    return f"{value.quantize(PRICE_PLACES, rounding=dec.ROUND_HALF_UP)}"


def now_utc() -> dt.datetime:
    """Get current UTC datetime"""
    return dt.datetime.now(dt.timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


def parse_ts(value) -> dt.datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed) into an aware datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        ts = value
    else:
        ts = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts


def short_id(value: str | None) -> str:
    return (value or "")[:8]
