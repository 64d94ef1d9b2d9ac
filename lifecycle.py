# ═══════════════════════════════════════════════════════════════════
# lifecycle.py - Close order state machine and broker fill callbacks
# ═══════════════════════════════════════════════════════════════════
"""
Close order lifecycle.

    submitted ──► filled            (terminal, P&L eligible)
        │
        ├──────► rejected / canceled / expired   (terminal, position still open)
        │
        └──────► timeout_unknown ──► filled | rejected | canceled | expired
                       │
                       └──► "open" (manual: row deleted)

Rows written before close tracking existed have no status and may move to
any state. Same-state transitions are no-ops. Every state other than
``filled`` nulls P&L across the whole group.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field

from audit import AuditEvent, FillDetails, RejectDetails, ResolutionDetails
from errors import InvalidTransitionError, LedgerError, PersistenceError
from models import CloseStatus, ExitPriceSource, FillEvent, LegRecord, PnlStatus, Side, primary_order
from utils import ZERO, money, now_iso, now_utc, parse_ts, safe_to_decimal, short_id

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[CloseStatus | None, set[CloseStatus]] = {
    None: set(CloseStatus),
    CloseStatus.SUBMITTED: {
        CloseStatus.FILLED,
        CloseStatus.REJECTED,
        CloseStatus.CANCELED,
        CloseStatus.EXPIRED,
        CloseStatus.TIMEOUT_UNKNOWN,
    },
    CloseStatus.TIMEOUT_UNKNOWN: {
        CloseStatus.FILLED,
        CloseStatus.REJECTED,
        CloseStatus.CANCELED,
        CloseStatus.EXPIRED,
    },
    # Terminal states
    CloseStatus.FILLED: set(),
    CloseStatus.REJECTED: set(),
    CloseStatus.CANCELED: set(),
    CloseStatus.EXPIRED: set(),
}

TERMINAL_STATES = {CloseStatus.FILLED, CloseStatus.REJECTED, CloseStatus.CANCELED, CloseStatus.EXPIRED}
NON_PNL_STATES = {CloseStatus.REJECTED, CloseStatus.CANCELED, CloseStatus.EXPIRED, CloseStatus.TIMEOUT_UNKNOWN}
RECOVERY_STATES = NON_PNL_STATES

OPEN_SIDE_FOR_CLOSE = {
    Side.BUY_TO_CLOSE: Side.SELL_TO_OPEN,
    Side.SELL_TO_CLOSE: Side.BUY_TO_OPEN,
}
CLOSE_SIDE_FOR_OPEN = {v: k for k, v in OPEN_SIDE_FOR_CLOSE.items()}

QTY_NORMALIZE_MIN_LEGS = 4

NULL_PNL = {
    "pnl": None,
    "pnl_percent": None,
    "pnl_formula": None,
    "pnl_computed_at": None,
    "needs_reconcile": True,
    "pnl_status": PnlStatus.PENDING,
    "resolved_entry_dollars": None,
    "resolved_exit_dollars": None,
}


class TransitionGuard:
    """Decides whether a close status change is allowed"""

    @staticmethod
    def can_transition(current: CloseStatus | None, target: CloseStatus) -> tuple[bool, str]:
        if current == target:
            return True, "Same state"
        if target in VALID_TRANSITIONS.get(current, set()):
            return True, "Valid transition"
        if current in TERMINAL_STATES:
            return False, f"Cannot transition from terminal state {current.value}"
        return False, f"Invalid transition: {getattr(current, 'value', current)} -> {target.value}"


@dataclass
class StateTransition:
    leg_id: str
    from_status: CloseStatus | None
    to_status: CloseStatus
    reason: str = ""
    applied: bool = True
    timestamp: str = field(default_factory=now_iso)


class CloseLifecycle:
    """Applies close status changes to leg rows"""

    def __init__(self, store, cfg: dict):
        self.store = store
        self.cfg = cfg

    def transition(self, leg: LegRecord, target: CloseStatus, reason: str = "",
                   changes: dict | None = None) -> StateTransition:
        current = leg.close_status
        allowed, why = TransitionGuard.can_transition(current, target)
        if not allowed:
            raise InvalidTransitionError(why, leg_id=leg.id, group_id=leg.trade_group_id)

        updates = {"close_status": target, **(changes or {})}
        if target in NON_PNL_STATES:
            updates.update(NULL_PNL)
            if target != CloseStatus.TIMEOUT_UNKNOWN:
                updates["close_reject_reason"] = reason or target.value

        before = leg.revision
        updated = self.store.update_leg(leg.id, updates, force=target in NON_PNL_STATES)
        applied = updated.revision != before
        if applied and current != target:
            logger.info("%s (%s): %s -> %s %s", short_id(leg.id), leg.symbol,
                        getattr(current, "value", None), target.value, reason)

        if target in NON_PNL_STATES and leg.trade_group_id:
            for sibling in self.store.group_legs(leg.trade_group_id):
                if sibling.id != leg.id:
                    self.store.update_leg(sibling.id, NULL_PNL, force=True)

        return StateTransition(leg.id, current, target, reason, applied)

    def mark_timeouts(self, now: dt.datetime | None = None) -> list[StateTransition]:
        """Move submitted closes with no broker answer to timeout_unknown"""
        now = now or now_utc()
        timeout = dt.timedelta(seconds=self.cfg.get("order_timeout_seconds", 60))
        transitions = []
        for leg in self.store.legs():
            if leg.close_status != CloseStatus.SUBMITTED:
                continue
            submitted = parse_ts(leg.close_submitted_at)
            if submitted is None or now - submitted < timeout:
                continue
            transitions.append(self.transition(leg, CloseStatus.TIMEOUT_UNKNOWN, "no broker confirmation"))
        if transitions:
            logger.warning("%d close order(s) timed out without confirmation", len(transitions))
        return transitions

    def resolve_timed_out_trade(self, leg_id: str, outcome: str, fill_details: dict | None = None) -> StateTransition | None:
        """Manual resolution: 'filled' records the fill, 'open' deletes the ghost row"""
        leg = self.store.get_leg(leg_id)
        if leg is None:
            raise PersistenceError(f"Trade {leg_id} not found", leg_id=leg_id)

        if outcome == "open":
            self.store.delete_leg(leg_id)
            logger.info("Deleted unfilled close %s (%s), position remains open", short_id(leg_id), leg.symbol)
            self._audit_resolution(leg, outcome)
            return None
        if outcome != "filled":
            raise ValueError(f"Unknown outcome '{outcome}', expected 'filled' or 'open'")

        details = fill_details or {}
        changes = {"close_filled_at": now_iso(), "needs_reconcile": True}
        fill_price = safe_to_decimal(details.get("avg_fill_price"))
        if fill_price is not None:
            changes["close_avg_fill_price"] = fill_price
            changes["exit_price"] = fill_price
        if details.get("filled_qty") is not None:
            changes["close_filled_qty"] = int(details["filled_qty"])
        fees = safe_to_decimal(details.get("fees"))
        if fees is not None:
            changes["fees"] = fees

        result = self.transition(leg, CloseStatus.FILLED, "manually verified", changes)
        self._audit_resolution(leg, outcome)
        return result

    def _audit_resolution(self, leg: LegRecord, outcome: str):
        self.store.append_audit(AuditEvent(
            event_type="timeout_resolved",
            trade_group_id=leg.trade_group_id,
            order_id=leg.close_order_id,
            details=ResolutionDetails(leg_id=leg.id, outcome=outcome),
        ))


@dataclass
class HandleResult:
    order_id: str
    status: CloseStatus
    legs_updated: int = 0
    group_keys: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class FillEventHandler:
    """Applies broker order-status callbacks, then asks the orchestrator for P&L"""

    def __init__(self, store, recalculator, cfg: dict, lifecycle: CloseLifecycle | None = None):
        self.store = store
        self.recalculator = recalculator
        self.cfg = cfg
        self.lifecycle = lifecycle or CloseLifecycle(store, cfg)

    def handle(self, event: FillEvent) -> HandleResult:
        result = HandleResult(order_id=event.order_id, status=event.status)
        legs = primary_order(self.store.find_by_close_order(event.order_id))
        if not legs:
            logger.warning("No trade found for close order %s", event.order_id)
            result.errors.append(f"Trade not found for close order {event.order_id}")
            return result

        if event.status != CloseStatus.FILLED:
            self._apply_non_fill(event, legs, result)
            return result

        if len(legs) > 1 or event.is_combo:
            self._apply_combo_fill(event, legs, result)
        else:
            self._apply_single_fill(event, legs[0], result)

        self._audit_fill(event, legs)
        for key in dict.fromkeys(l.group_key for l in legs):
            self._request_recompute(key, result)
        return result

    # ── non-fill outcomes ───────────────────────────────────────────

    def _apply_non_fill(self, event: FillEvent, legs: list[LegRecord], result: HandleResult):
        for leg in legs:
            try:
                self.lifecycle.transition(leg, event.status, event.reject_reason or event.status.value)
                result.legs_updated += 1
            except LedgerError as exc:
                logger.error("Cannot apply %s to %s: %s", event.status.value, short_id(leg.id), exc)
                result.errors.append(f"{leg.symbol}: {exc}")

        groups = {l.trade_group_id for l in legs}
        for group_id in groups:
            self.store.append_audit(AuditEvent(
                event_type=f"close_{event.status.value}",
                trade_group_id=group_id,
                order_id=event.order_id,
                details=RejectDetails(status=event.status.value, reason=event.reject_reason),
            ))

    # ── fills ───────────────────────────────────────────────────────

    def _open_side(self, leg: LegRecord, closing_side: Side | None) -> Side | None:
        """Known open side: stored row, then group ledger, then the closing execution"""
        if leg.open_side is not None:
            return leg.open_side
        ledger_side = self.store.group_leg_side(leg.trade_group_id, leg.symbol)
        if ledger_side is not None:
            return ledger_side
        return OPEN_SIDE_FOR_CLOSE.get(closing_side)

    def _apply_combo_fill(self, event: FillEvent, legs: list[LegRecord], result: HandleResult):
        multiplier = legs[0].multiplier or self.cfg.get("default_multiplier", 100)
        contracts = event.filled_qty or max(l.quantity or 1 for l in legs)
        normalized = len(legs) >= QTY_NORMALIZE_MIN_LEGS and contracts == len(legs)
        if normalized:
            logger.warning("Filled quantity %d equals leg count, treating as 1 contract", contracts)
            contracts = 1

        exit_debit_dollars = ZERO
        fills_seen = 0
        complete = True
        sides: dict[str, Side | None] = {}
        for leg in legs:
            leg_fill = event.leg_fills.get(leg.symbol)
            sides[leg.id] = self._open_side(leg, leg_fill.side if leg_fill else None)
            if leg_fill is None or leg_fill.avg_fill_price is None or leg_fill.avg_fill_price <= 0:
                logger.warning("Missing or zero fill for %s on order %s", leg.symbol, event.order_id)
                complete = False
                continue
            fills_seen += 1
            amount = leg_fill.avg_fill_price * (leg_fill.filled_qty or leg.quantity) * multiplier
            if sides[leg.id] == Side.SELL_TO_OPEN:
                exit_debit_dollars += amount
            elif sides[leg.id] == Side.BUY_TO_OPEN:
                exit_debit_dollars -= amount
            else:
                complete = False

        per_leg = exit_debit_dollars if complete and exit_debit_dollars != 0 else None
        combo = abs(event.avg_fill_price) * contracts * multiplier if event.avg_fill_price else None
        if per_leg is not None:
            source = ExitPriceSource.PER_LEG
        elif fills_seen:
            source = ExitPriceSource.PARTIAL
        else:
            source = ExitPriceSource.COMBO_NET

        ledger_credit = self.store.group_entry_credit(legs[0].trade_group_id)
        filled_at = event.timestamp or now_iso()

        for index, leg in enumerate(legs):
            leg_fill = event.leg_fills.get(leg.symbol)
            changes = {
                "close_filled_at": filled_at,
                "exit_time": filled_at,
                "close_filled_qty": contracts,
                "exit_price_source": source,
            }
            if normalized:
                changes["quantity"] = contracts
            if leg_fill is not None and leg_fill.avg_fill_price is not None:
                changes["exit_price"] = leg_fill.avg_fill_price
                changes["close_avg_fill_price"] = leg_fill.avg_fill_price
            if sides[leg.id] is not None:
                changes["open_side"] = sides[leg.id]
                changes["close_side"] = CLOSE_SIDE_FOR_OPEN[sides[leg.id]]
            if ledger_credit is not None and ledger_credit > 0:
                changes["entry_credit_dollars"] = ledger_credit
            if index == 0:
                if per_leg is not None:
                    changes["exit_debit_dollars"] = per_leg
                if per_leg is not None or combo is not None:
                    changes["exit_debit"] = per_leg if per_leg is not None else combo
                if event.fees is not None:
                    changes["fees"] = event.fees
            self._fill_leg(leg, changes, result)

        logger.info(
            "Order %s filled: %d legs, %d contracts, exit debit %s (%s)",
            event.order_id, len(legs), contracts,
            f"${money(per_leg if per_leg is not None else combo)}" if (per_leg is not None or combo is not None) else "unknown",
            source.value,
        )

    def _apply_single_fill(self, event: FillEvent, leg: LegRecord, result: HandleResult):
        leg_fill = event.leg_fills.get(leg.symbol)
        closing_side = (leg_fill.side if leg_fill else None) or event.side
        open_side = self._open_side(leg, closing_side)
        fill_price = leg_fill.avg_fill_price if leg_fill and leg_fill.avg_fill_price is not None else event.avg_fill_price
        fill_qty = (leg_fill.filled_qty if leg_fill else None) or event.filled_qty or leg.quantity
        filled_at = event.timestamp or now_iso()

        changes = {
            "close_filled_at": filled_at,
            "exit_time": filled_at,
            "close_filled_qty": fill_qty,
            "quantity": fill_qty,
        }
        if fill_price is not None:
            changes["exit_price"] = fill_price
            changes["close_avg_fill_price"] = fill_price
            changes["exit_price_source"] = ExitPriceSource.PER_LEG
        if open_side is not None:
            changes["open_side"] = open_side
            changes["close_side"] = CLOSE_SIDE_FOR_OPEN[open_side]
        elif closing_side is not None:
            changes["close_side"] = closing_side
        if event.fees is not None:
            changes["fees"] = event.fees
        self._fill_leg(leg, changes, result)

    def _fill_leg(self, leg: LegRecord, changes: dict, result: HandleResult):
        try:
            self.lifecycle.transition(leg, CloseStatus.FILLED, "broker fill", changes)
            result.legs_updated += 1
        except LedgerError as exc:
            logger.error("Failed to record fill for %s (%s): %s", short_id(leg.id), leg.symbol, exc)
            result.errors.append(f"{leg.symbol}: {exc}")

    def _request_recompute(self, key: str, result: HandleResult):
        if self.recalculator.in_flight:
            self.recalculator.defer(key)
            result.deferred.append(key)
            return
        report = self.recalculator.recalculate_group(key)
        result.group_keys.append(key)
        result.errors.extend(report.errors)

    def _audit_fill(self, event: FillEvent, legs: list[LegRecord]):
        for group_id in {l.trade_group_id for l in legs}:
            self.store.append_audit(AuditEvent(
                event_type="close_filled",
                trade_group_id=group_id,
                order_id=event.order_id,
                details=FillDetails(
                    symbol=event.symbol,
                    avg_fill_price=str(event.avg_fill_price) if event.avg_fill_price is not None else None,
                    filled_qty=event.filled_qty,
                    side=event.side.value if event.side else None,
                    leg_fills={
                        sym: {"avg_fill_price": str(lf.avg_fill_price), "filled_qty": lf.filled_qty}
                        for sym, lf in event.leg_fills.items()
                    },
                ),
            ))
