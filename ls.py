# ═══════════════════════════════════════════════════════════════════
# ls.py - Trade listings
# ═══════════════════════════════════════════════════════════════════
import datetime as dt
from zoneinfo import ZoneInfo

import rich
from rich.table import Table

from config import strategy_display_name
from models import LegRecord
from utils import money, parse_ts, price, short_id

SIDE_TAG = {True: "S", False: "B", None: "?"}


def _local_time(value, tz) -> str:
    ts = parse_ts(value)
    return ts.astimezone(tz).strftime("%Y-%m-%d %I:%M %p") if ts else "-"


def _pnl_markup(value) -> str:
    if value is None:
        return "[yellow]pending[/]"
    color = "green" if value >= 0 else "red"
    return f"[{color}]${money(value)}[/]"


def list_trades(trade_ops, cfg, limit=50):
    """Grouped listing: one row per trade group, P&L only once verified"""
    tz = ZoneInfo(cfg.get("timezone", "America/New_York"))
    groups = trade_ops.grouped_listing(limit)
    if not groups:
        rich.print("[dim]No trades recorded[/]")
        return

    tbl = Table(title="Trades")
    for col, justify in [("id", "left"), ("closed", "left"), ("strategy", None), ("legs", None),
                         ("qty", "right"), ("close", None), ("PnL", "right")]:
        tbl.add_column(col, justify=justify)

    for group in groups:
        primary = group.primary_leg
        legs = "; ".join(f"{SIDE_TAG[l.is_short()]} {l.symbol}" for l in group.legs)
        strategy = group.strategy_name or (strategy_display_name(group.strategy_type, cfg) if group.strategy_type else "single")
        statuses = {l.close_status.value if l.close_status else "-" for l in group.legs}
        tbl.add_row(
            short_id(group.group_id or primary.id),
            _local_time(primary.close_filled_at or primary.exit_time or primary.close_submitted_at, tz),
            strategy,
            legs,
            str(group.contracts()),
            "/".join(sorted(statuses)),
            _pnl_markup(group.total_pnl()),
        )

    rich.print(tbl)


def list_legs(legs: list[LegRecord], title: str):
    """Flat table of leg rows"""
    if not legs:
        rich.print(f"[dim]{title}: none[/]")
        return

    tbl = Table(title=title)
    for col, justify in [("id", "left"), ("symbol", "left"), ("group", "left"), ("open", None),
                         ("close", None), ("qty", "right"), ("entry", "right"), ("exit", "right"),
                         ("close status", None), ("submitted", None), ("reason", None)]:
        tbl.add_column(col, justify=justify)

    for l in legs:
        submitted = parse_ts(l.close_submitted_at)
        tbl.add_row(
            short_id(l.id), l.symbol, short_id(l.trade_group_id) or "-",
            l.open_side.value if l.open_side else "?",
            l.close_side.value if l.close_side else "?",
            str(l.quantity), price(l.entry_price), price(l.exit_price),
            l.close_status.value if l.close_status else "-",
            submitted.astimezone(dt.timezone.utc).strftime("%m-%d %H:%M") if submitted else "-",
            l.close_reject_reason or "",
        )
    rich.print(tbl)
