# ═══════════════════════════════════════════════════════════════════
# recalc.py - Idempotent P&L recalculation over the whole ledger
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations

import decimal as dec
import logging
import threading
from dataclasses import dataclass, field

import rich
from rich.table import Table

from audit import AuditEvent, RecalcDetails
from config import threshold
from errors import AmbiguousDirectionError, LedgerError, MissingDataError, PersistenceError
from leg_sides import InferenceResult, LegInfo, get_inferred_side, infer_leg_sides
from models import LegRecord, PnlStatus, Side, TradeGroup
from pnl import calculate_group_pnl, calculate_pnl
from resolvers import Resolution, resolve_entry_credit, resolve_exit_debit
from utils import ZERO, money, now_iso, short_id

logger = logging.getLogger(__name__)

INCLUDED_IN_GROUP = "Included in group total"

CLOSE_SIDE_FOR = {
    Side.SELL_TO_OPEN: Side.BUY_TO_CLOSE,
    Side.BUY_TO_OPEN: Side.SELL_TO_CLOSE,
}


class CancelToken:
    """Stops a running pass between groups"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RecalcReport:
    updated: int = 0
    skipped: int = 0
    sanitized: int = 0
    finalized: int = 0
    missing: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    total_before: dec.Decimal = ZERO
    total_after: dec.Decimal = ZERO

    @property
    def delta(self) -> dec.Decimal:
        return self.total_after - self.total_before

    def merge(self, other: RecalcReport):
        self.updated += other.updated
        self.skipped += other.skipped
        self.sanitized += other.sanitized
        self.finalized += other.finalized
        self.missing += other.missing
        self.errors.extend(other.errors)


def total_pnl(legs: list[LegRecord]) -> dec.Decimal:
    """Aggregate stored P&L, counting missing values as zero"""
    return sum((l.pnl for l in legs if l.pnl is not None), ZERO)


class Recalculator:
    """Recomputes group and single-leg P&L from stored fills"""

    def __init__(self, store, cfg: dict):
        self.store = store
        self.cfg = cfg
        self.in_flight = False
        self._deferred: set[str] = set()
        self._lock = threading.Lock()

    # ── deferral used by fill callbacks ─────────────────────────────

    def defer(self, group_key: str):
        with self._lock:
            self._deferred.add(group_key)
        logger.info("Deferred recompute of %s until the running pass ends", short_id(group_key))

    @property
    def deferred(self) -> set[str]:
        with self._lock:
            return set(self._deferred)

    def _drain_deferred(self) -> list[str]:
        with self._lock:
            keys = sorted(self._deferred)
            self._deferred.clear()
        return keys

    # ── entry points ────────────────────────────────────────────────

    def recalculate(self, force: bool = False, cancel_token: CancelToken | None = None) -> RecalcReport:
        """Recompute every group; finalized groups are left alone unless forced"""
        report = RecalcReport()
        with self._lock:
            if self.in_flight:
                logger.warning("Recalculation already running, skipping")
                report.errors.append("Recalculation already running")
                return report
            self.in_flight = True

        try:
            report.total_before = total_pnl(self.store.legs())
            logger.info("Starting recompute: total P&L before $%s, force=%s", money(report.total_before), force)

            for group in self.store.groups():
                if cancel_token is not None and cancel_token.cancelled:
                    logger.warning("Recalculation cancelled, remaining groups untouched")
                    report.cancelled = True
                    break
                self._process(group, force, report)
        finally:
            with self._lock:
                self.in_flight = False

        for key in self._drain_deferred():
            report.merge(self.recalculate_group(key))

        report.total_after = total_pnl(self.store.legs())
        logger.info(
            "Recompute complete: updated=%d skipped=%d sanitized=%d finalized=%d missing=%d errors=%d",
            report.updated, report.skipped, report.sanitized, report.finalized, report.missing, len(report.errors),
        )
        logger.info("Total P&L after: $%s (delta $%s)", money(report.total_after), money(report.delta))
        if abs(report.delta) > threshold(self.cfg, "pnl_delta_warning"):
            logger.warning("Large P&L change from recompute: $%s", money(report.delta))
        return report

    def recalculate_group(self, key: str, force: bool = False) -> RecalcReport:
        """Recompute one group (or single leg by id)"""
        report = RecalcReport()
        group = self.store.group(key)
        if group is None:
            report.errors.append(f"Group {short_id(key)} not found")
            return report
        report.total_before = total_pnl(group.legs)
        self._process(group, force, report)
        report.total_after = total_pnl(self.store.group(key).legs)
        return report

    # ── per group ───────────────────────────────────────────────────

    def _process(self, group: TradeGroup, force: bool, report: RecalcReport):
        primary = group.primary_leg
        if not force and primary.is_pnl_finalized():
            logger.debug("Skipping finalized %s (pnl_status=%s)", short_id(group.key), primary.pnl_status.value)
            report.finalized += len(group.legs)
            return

        if not group.all_filled():
            for leg in group.legs:
                self._write(leg, {
                    "needs_reconcile": True,
                    "pnl": None,
                    "pnl_percent": None,
                    "pnl_formula": None,
                    "pnl_computed_at": None,
                    "pnl_status": PnlStatus.PENDING,
                    "resolved_entry_dollars": None,
                    "resolved_exit_dollars": None,
                }, force, report, counter="sanitized")
            return

        try:
            if len(group.legs) > 1:
                self._compute_group(group, force, report)
            else:
                self._compute_single(primary, force, report)
        except (MissingDataError, AmbiguousDirectionError) as exc:
            self._mark_missing(group, force, report, exc)

    def _write(self, leg: LegRecord, changes: dict, force: bool, report: RecalcReport,
               counter: str = "updated", stamp: bool = False):
        """Persist changes if they differ from the row; failures are aggregated"""
        if all(getattr(leg, k) == v for k, v in changes.items()):
            report.skipped += 1
            return
        if stamp:
            changes = {**changes, "pnl_computed_at": now_iso()}
        try:
            self.store.update_leg(leg.id, changes, force=force, expected_revision=leg.revision)
        except PersistenceError as exc:
            logger.error("Failed to update %s (%s): %s", short_id(leg.id), leg.symbol, exc)
            report.errors.append(f"Trade {leg.id}: {exc.code}: {exc}")
            return
        setattr(report, counter, getattr(report, counter) + 1)

    def _mark_missing(self, group: TradeGroup, force: bool, report: RecalcReport, exc: LedgerError):
        logger.warning("%s: %s (%s), marking missing_fills", short_id(group.key), exc, exc.code)
        for leg in group.legs:
            self._write(leg, {
                "needs_reconcile": True,
                "pnl": None,
                "pnl_percent": None,
                "pnl_formula": None,
                "pnl_computed_at": None,
                "pnl_status": PnlStatus.MISSING_FILLS,
                "resolved_entry_dollars": None,
                "resolved_exit_dollars": None,
            }, force, report, counter="missing")

    def _leg_sides(self, group: TradeGroup, inference: InferenceResult) -> dict[str, tuple[Side, Side]]:
        """Sides from strike inference, falling back to the group ledger per leg"""
        sides = {}
        for leg in group.legs:
            inferred = get_inferred_side(inference, leg.symbol) if inference.success else None
            if inferred is None:
                open_side = self.store.group_leg_side(leg.trade_group_id, leg.symbol)
                if open_side in CLOSE_SIDE_FOR:
                    inferred = (open_side, CLOSE_SIDE_FOR[open_side])
            if inferred is not None:
                sides[leg.id] = inferred
        return sides

    def _compute_group(self, group: TradeGroup, force: bool, report: RecalcReport):
        primary = group.primary_leg
        contracts = group.contracts() or 1
        fees = group.total_fees()
        multiplier = primary.multiplier or self.cfg.get("default_multiplier", 100)

        inference = infer_leg_sides(
            [LegInfo(l.symbol, l.entry_price or ZERO, l.exit_price) for l in group.legs],
            group.strategy_type,
        )
        sides = self._leg_sides(group, inference)

        stored_entry = primary.entry_credit_dollars
        stored_exit = primary.exit_debit_dollars
        common = {"needs_reconcile": False, "pnl_status": PnlStatus.COMPUTED}
        # an unchanged missing_fills group is not audited again
        audit_missing = primary.pnl_status != PnlStatus.MISSING_FILLS

        if stored_entry is not None and stored_entry > 0 and stored_exit not in (None, ZERO):
            pnl = stored_entry - stored_exit
            pct = calculate_group_pnl(stored_entry, stored_exit, contracts).pnl_percent
            formula = f"${money(stored_entry)} - ${money(stored_exit)} = ${money(pnl)} [from actual fills]"
            sibling_extra = {"resolved_entry_dollars": stored_entry, "resolved_exit_dollars": stored_exit}
            primary_changes = {**common, **sibling_extra, "pnl": pnl, "pnl_percent": pct, "pnl_formula": formula}
            entry_res = exit_res = None
        else:
            entry_res = resolve_entry_credit(
                group.group_id, self.store.group_entry_credit(group.group_id), primary.entry_credit,
                inference, contracts, multiplier, self.cfg,
            )
            if not entry_res.resolved:
                if audit_missing:
                    self._audit(group, None, PnlStatus.MISSING_FILLS, entry_res, None)
                raise MissingDataError(f"missing entry credit ({entry_res.rationale})", group_id=group.group_id)
            exit_res = resolve_exit_debit(group.legs, contracts, multiplier, entry_res.value, inference, self.cfg)
            if not exit_res.resolved:
                if audit_missing:
                    self._audit(group, None, PnlStatus.MISSING_FILLS, entry_res, exit_res)
                raise MissingDataError(f"missing exit debit ({exit_res.rationale})", group_id=group.group_id)

            result = calculate_group_pnl(entry_res.value, exit_res.value, contracts, fees)
            formula = f"{result.formula} [entry:{entry_res.source}, exit:{exit_res.source}]"
            sibling_extra = {"resolved_entry_dollars": entry_res.value, "resolved_exit_dollars": exit_res.value}
            primary_changes = {
                **common, **sibling_extra,
                "pnl": result.pnl, "pnl_percent": result.pnl_percent, "pnl_formula": formula,
            }
            pnl = result.pnl

        before = report.updated
        for leg in group.legs:
            if leg.id == primary.id:
                changes = dict(primary_changes)
            else:
                changes = {**common, **sibling_extra, "pnl": ZERO, "pnl_percent": ZERO, "pnl_formula": INCLUDED_IN_GROUP}
            if leg.id in sides:
                changes["open_side"], changes["close_side"] = sides[leg.id]
            self._write(leg, changes, force, report, stamp=True)

        if report.updated > before:
            logger.info("Group %s: P&L $%s", short_id(group.key), money(pnl))
            self._audit(group, primary_changes["pnl_formula"], PnlStatus.COMPUTED, entry_res, exit_res, pnl)

    def _compute_single(self, leg: LegRecord, force: bool, report: RecalcReport):
        if not leg.has_verified_direction():
            raise AmbiguousDirectionError("direction not verified by a broker close", leg_id=leg.id)

        result = calculate_pnl(
            leg.open_side, leg.entry_price, leg.exit_price, leg.quantity,
            leg.multiplier or self.cfg.get("default_multiplier", 100), leg.fees,
        )
        if result is None:
            report.errors.append(f"Trade {short_id(leg.id)} ({leg.symbol}): P&L calculation failed")
            raise MissingDataError("P&L calculation failed", leg_id=leg.id)

        self._write(leg, {
            "pnl": result.pnl,
            "pnl_percent": result.pnl_percent,
            "pnl_formula": result.formula,
            "needs_reconcile": False,
            "pnl_status": PnlStatus.COMPUTED,
        }, force, report, stamp=True)

    def _audit(self, group: TradeGroup, formula: str | None, status: PnlStatus,
               entry_res: Resolution | None, exit_res: Resolution | None, pnl: dec.Decimal | None = None):
        if not group.group_id:
            return
        corrections = [
            f"{c.code}: {c.field} {c.original} -> {c.corrected} ({c.rationale})"
            for res in (entry_res, exit_res) if res is not None
            for c in res.corrections
        ]
        try:
            self.store.append_audit(AuditEvent(
                event_type="pnl_recalculated" if status == PnlStatus.COMPUTED else "pnl_missing_fills",
                trade_group_id=group.group_id,
                details=RecalcDetails(
                    pnl=str(pnl) if pnl is not None else None,
                    formula=formula,
                    status=status.value,
                    entry_source=entry_res.source if entry_res else None,
                    exit_source=exit_res.source if exit_res else None,
                    corrections=corrections,
                ),
            ))
        except PersistenceError as exc:
            logger.error("Failed to record audit event for %s: %s", short_id(group.key), exc)


def print_report(report: RecalcReport):
    """Show a recalculation report"""
    tbl = Table(title="P&L Recalculation")
    tbl.add_column("Metric", justify="left")
    tbl.add_column("Value", justify="right")
    tbl.add_row("Updated", str(report.updated))
    tbl.add_row("Unchanged", str(report.skipped))
    tbl.add_row("Sanitized", str(report.sanitized))
    tbl.add_row("Finalized (skipped)", str(report.finalized))
    tbl.add_row("Missing fills", str(report.missing))
    tbl.add_row("P&L before", f"${money(report.total_before)}")
    tbl.add_row("P&L after", f"${money(report.total_after)}")
    change_color = "green" if report.delta >= 0 else "red"
    tbl.add_row("Change", f"[{change_color}]${money(report.delta)}[/]")
    rich.print(tbl)

    if report.cancelled:
        rich.print("[yellow]Recalculation was cancelled before all groups were processed[/]")
    for error in report.errors:
        rich.print(f"[red]  - {error}[/]")
