# ═══════════════════════════════════════════════════════════════════
# config.py - Single source of truth for thresholds and strategies
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations

import copy
import decimal as dec
import logging
import pathlib
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ruamel.yaml import YAML

from models import GroupHealth

logger = logging.getLogger(__name__)

yaml = YAML(typ="safe")
CONFIG_FILE = pathlib.Path("config.yaml")

DEFAULT_CFG = {
    "book": "trades.json",
    "inbox": "inbox",
    "archive": "archive",
    "default_multiplier": 100,
    "order_timeout_seconds": 60,
    "match_window_minutes": 30,
    # Trading day boundary for realized-today P&L
    "timezone": "America/New_York",
    "thresholds": {
        # Cached entry credits at or below this are per-share leftovers
        "min_dollar_entry_credit": "50",
        "per_share_ceiling": "50",
        "per_share_ratio": "0.10",
        "summed_tolerance": "0.10",
        "combo_price_tolerance": "0.005",
        "pnl_delta_warning": "100",
    },
    "strategy_types": {
        "iron_condor": {"legs": 4, "name": "Iron Condor"},
        "iron_fly": {"legs": 4, "name": "Iron Fly"},
        "credit_put_spread": {"legs": 2, "name": "Credit Put Spread"},
        "credit_call_spread": {"legs": 2, "name": "Credit Call Spread"},
        "butterfly": {"legs": 3, "name": "Butterfly"},
        "straddle": {"legs": 2, "name": "Straddle"},
        "strangle": {"legs": 2, "name": "Strangle"},
        "custom": {"legs": None, "name": "Custom"},
    },
    "strategies": {
        "SPX-IC": {"type": "iron_condor"},
        "SPX-FLY": {"type": "iron_fly"},
        "BULL-PUT": {"type": "credit_put_spread"},
        "BEAR-CALL": {"type": "credit_call_spread"},
    },
}

THRESHOLD_KEYS = set(DEFAULT_CFG["thresholds"])


def load_config(path: pathlib.Path | str | None = None) -> dict:
    """Load configuration, creating defaults if needed"""
    config_file = pathlib.Path(path) if path else CONFIG_FILE
    if not config_file.exists():
        logger.info("Creating default %s", config_file)
        yaml.dump(DEFAULT_CFG, config_file)

    cfg = yaml.load(config_file) or {}
    return merge_defaults(cfg)


def merge_defaults(cfg: dict) -> dict:
    """Fill keys missing from an older config file with their defaults"""
    merged = copy.deepcopy(DEFAULT_CFG)
    for key, value in cfg.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def threshold(cfg: dict, name: str) -> dec.Decimal:
    """Threshold value as Decimal"""
    value = cfg.get("thresholds", {}).get(name, DEFAULT_CFG["thresholds"][name])
    return dec.Decimal(str(value))


def get_strategy_type(strategy_name: str | None, cfg: dict) -> str | None:
    """Strategy type for a configured strategy name"""
    if not strategy_name:
        return None
    meta = cfg.get("strategies", {}).get(strategy_name, {})
    return meta.get("type")


def expected_leg_count(strategy_type: str | None, cfg: dict | None = None) -> int | None:
    """Number of legs a strategy type should have, None when open-ended"""
    types = (cfg or DEFAULT_CFG).get("strategy_types", {})
    meta = types.get(strategy_type or "")
    if not meta:
        return None
    return meta.get("legs")


def strategy_display_name(strategy_type: str | None, cfg: dict | None = None) -> str:
    types = (cfg or DEFAULT_CFG).get("strategy_types", {})
    meta = types.get(strategy_type or "")
    if meta and meta.get("name"):
        return meta["name"]
    return (strategy_type or "Unknown").replace("_", " ").title()


def compute_group_health(strategy_type: str | None, leg_count: int, cfg: dict | None = None) -> GroupHealth:
    """Compare a group's leg count with what its strategy type expects"""
    expected = expected_leg_count(strategy_type, cfg)
    if expected is None:
        return GroupHealth.UNKNOWN
    return GroupHealth.OK if leg_count == expected else GroupHealth.BROKEN


def validate_config(cfg: dict) -> list[str]:
    """Validate configuration, returning a list of errors"""
    errors = []
    strategy_types = cfg.get("strategy_types", {})

    for name, meta in cfg.get("strategies", {}).items():
        if not isinstance(meta, dict) or "type" not in meta:
            errors.append(f"Strategy '{name}' missing 'type' field")
            continue
        if meta["type"] not in strategy_types:
            errors.append(f"Strategy '{name}' has invalid type '{meta['type']}'")

    for type_name, meta in strategy_types.items():
        legs = meta.get("legs") if isinstance(meta, dict) else None
        if legs is not None and (not isinstance(legs, int) or legs < 1):
            errors.append(f"Strategy type '{type_name}' has invalid leg count '{legs}'")

    for key, value in cfg.get("thresholds", {}).items():
        if key not in THRESHOLD_KEYS:
            errors.append(f"Unknown threshold '{key}'")
            continue
        try:
            if dec.Decimal(str(value)) < 0:
                errors.append(f"Threshold '{key}' must not be negative")
        except dec.InvalidOperation:
            errors.append(f"Threshold '{key}' is not a number: '{value}'")

    for key in ("default_multiplier", "order_timeout_seconds", "match_window_minutes"):
        value = cfg.get(key)
        if not isinstance(value, int) or value <= 0:
            errors.append(f"'{key}' must be a positive integer")

    try:
        ZoneInfo(str(cfg.get("timezone", "")))
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"Unknown timezone '{cfg.get('timezone')}'")

    return errors
