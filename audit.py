# ═══════════════════════════════════════════════════════════════════
# audit.py - Audit trail events and P&L audit reports
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import ClassVar

import rich
from rich.markup import escape
from rich.table import Table

from config import compute_group_health, strategy_display_name
from models import GroupHealth, LegRecord, TradeGroup
from utils import money, now_iso, parse_ts, price, short_id


@dataclass
class FillDetails:
    kind: ClassVar[str] = "fill"
    symbol: str
    avg_fill_price: str | None = None
    filled_qty: int | None = None
    side: str | None = None
    leg_fills: dict = field(default_factory=dict)


@dataclass
class RejectDetails:
    kind: ClassVar[str] = "reject"
    status: str
    reason: str | None = None


@dataclass
class ReconcileDetails:
    kind: ClassVar[str] = "reconcile"
    leg_id: str
    matched_order_id: str
    match_type: str
    open_side: str | None = None
    close_side: str | None = None


@dataclass
class RecalcDetails:
    kind: ClassVar[str] = "recalc"
    pnl: str | None
    formula: str | None
    status: str
    entry_source: str | None = None
    exit_source: str | None = None
    corrections: list[str] = field(default_factory=list)


@dataclass
class ResolutionDetails:
    kind: ClassVar[str] = "resolution"
    leg_id: str
    outcome: str


@dataclass
class GenericDetails:
    kind: ClassVar[str] = "generic"
    data: dict = field(default_factory=dict)


DETAIL_TYPES = {
    cls.kind: cls
    for cls in (FillDetails, RejectDetails, ReconcileDetails, RecalcDetails, ResolutionDetails, GenericDetails)
}

AuditDetails = FillDetails | RejectDetails | ReconcileDetails | RecalcDetails | ResolutionDetails | GenericDetails


def details_from_dict(d: dict | None) -> AuditDetails:
    """Rebuild typed details; unknown shapes land in GenericDetails"""
    d = dict(d or {})
    cls = DETAIL_TYPES.get(d.pop("kind", None))
    if cls is None or cls is GenericDetails:
        return GenericDetails(data=d.get("data", d))
    try:
        return cls(**d)
    except TypeError:
        return GenericDetails(data=d)


@dataclass
class AuditEvent:
    event_type: str
    details: AuditDetails
    trade_group_id: str | None = None
    order_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "trade_group_id": self.trade_group_id,
            "order_id": self.order_id,
            "details": {"kind": self.details.kind, **asdict(self.details)},
        }

    @classmethod
    def from_dict(cls, d: dict) -> AuditEvent:
        return cls(
            id=d.get("id") or uuid.uuid4().hex,
            event_type=d.get("event_type", "unknown"),
            timestamp=d.get("timestamp") or now_iso(),
            trade_group_id=d.get("trade_group_id"),
            order_id=d.get("order_id"),
            details=details_from_dict(d.get("details")),
        )


# ═══════════════════════════════════════════════════════════════════
# Reports
# ═══════════════════════════════════════════════════════════════════

def _status_markup(leg: LegRecord) -> str:
    status = leg.pnl_status.value
    color = {"computed": "green", "final": "green", "pending": "yellow"}.get(status, "red")
    return f"[{color}]{status}[/]"


def _health_markup(health: GroupHealth) -> str:
    color = {GroupHealth.OK: "green", GroupHealth.BROKEN: "red"}.get(health, "dim")
    return f"[{color}]{health.value}[/]"


def audit_group(store, key: str, cfg: dict) -> bool:
    """Show how a group's (or single leg's) P&L was derived"""
    group = store.group(key)
    if group is None:
        rich.print(f"[red]Trade or group {key} not found[/]")
        return False

    primary = group.primary_leg
    rich.print(f"\n[bold cyan]═══ P&L AUDIT: {short_id(group.group_id or primary.id)} ═══[/]")

    overview = Table(title="Group Overview", show_header=False)
    overview.add_column("Field", style="bold", width=18)
    overview.add_column("Value", width=60)
    overview.add_row("Strategy", f"{group.strategy_name or '-'} ({strategy_display_name(group.strategy_type, cfg)})")
    overview.add_row("Legs", str(len(group.legs)))
    if not group.is_single:
        health = compute_group_health(group.strategy_type, len(group.legs), cfg)
        overview.add_row("Health", _health_markup(health))
        ledger_credit = store.group_entry_credit(group.group_id)
        overview.add_row("Ledger credit", f"${money(ledger_credit)}" if ledger_credit is not None else "-")
    overview.add_row("Contracts", str(group.contracts()))
    overview.add_row("Fees", f"${money(group.total_fees())}")
    overview.add_row("Primary leg", primary.symbol)
    overview.add_row("P&L", f"${money(primary.pnl)}" if primary.pnl is not None else "N/A")
    overview.add_row("Formula", escape(primary.pnl_formula or "-"))
    overview.add_row("Needs reconcile", "[red]yes[/]" if group.needs_reconcile() else "[green]no[/]")
    rich.print(overview)

    legs = Table(title="Legs")
    for col, justify in [("id", "left"), ("symbol", "left"), ("open", None), ("close", None),
                         ("qty", "right"), ("entry", "right"), ("exit", "right"),
                         ("exit_debit", "right"), ("resolved exit", "right"), ("close status", None),
                         ("pnl status", None), ("pnl", "right")]:
        legs.add_column(col, justify=justify)
    for leg in [primary, *group.siblings]:
        legs.add_row(
            short_id(leg.id), leg.symbol,
            leg.open_side.value if leg.open_side else "?",
            leg.close_side.value if leg.close_side else "?",
            str(leg.quantity), price(leg.entry_price), price(leg.exit_price),
            money(leg.exit_debit),
            money(leg.resolved_exit_dollars),
            leg.close_status.value if leg.close_status else "-",
            _status_markup(leg),
            money(leg.pnl),
        )
    rich.print(legs)

    events = store.audit_events(group.group_id) if group.group_id else []
    if events:
        trail = Table(title="Audit Trail")
        trail.add_column("time")
        trail.add_column("event")
        trail.add_column("details")
        for event in events:
            ts = parse_ts(event.timestamp)
            detail = {k: v for k, v in asdict(event.details).items() if v not in (None, [], {})}
            trail.add_row(ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "-", event.event_type, escape(str(detail)))
        rich.print(trail)
    return True


def audit_all_groups(store, cfg: dict, only_problems: bool = False):
    """Summary of every group with its P&L status and health"""
    tbl = Table(title="P&L Audit Summary")
    for col, justify in [("group", "left"), ("strategy", None), ("legs", "right"), ("health", None),
                         ("status", None), ("pnl", "right"), ("reconcile", None)]:
        tbl.add_column(col, justify=justify)

    shown = 0
    for group in store.groups():
        primary = group.primary_leg
        health = GroupHealth.UNKNOWN if group.is_single else compute_group_health(group.strategy_type, len(group.legs), cfg)
        problem = group.needs_reconcile() or health == GroupHealth.BROKEN
        if only_problems and not problem:
            continue
        shown += 1
        tbl.add_row(
            short_id(group.group_id or primary.id),
            strategy_display_name(group.strategy_type, cfg) if group.strategy_type else primary.symbol,
            str(len(group.legs)),
            _health_markup(health),
            _status_markup(primary),
            money(group.total_pnl()),
            "[red]yes[/]" if group.needs_reconcile() else "[green]no[/]",
        )

    if shown == 0:
        rich.print("[dim]No groups to audit[/]")
        return
    rich.print(tbl)
