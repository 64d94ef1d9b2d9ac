# ═══════════════════════════════════════════════════════════════════
# fill_matcher.py - Reconcile leg rows against broker order history
# ═══════════════════════════════════════════════════════════════════
"""
Fill-based reconciliation.

Direction is only ever taken from executions: a ``buy_to_close`` fill means
the leg was opened short, a ``sell_to_close`` fill means it was opened long.
Rows with no matching closing execution stay unverified. Nothing here
deletes data; it only backfills.
"""

from __future__ import annotations

import datetime as dt
import decimal as dec
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from audit import AuditEvent, ReconcileDetails
from errors import LedgerError
from lifecycle import OPEN_SIDE_FOR_CLOSE, CloseLifecycle
from models import CloseStatus, ExitPriceSource, FillEvent, LegFill, LegRecord, PnlStatus, Side, coerce_side, underlying_of
from pnl import calculate_pnl
from utils import ZERO, money, now_iso, now_utc, parse_ts, safe_to_decimal

logger = logging.getLogger(__name__)

CLOSING_SIDES = {"buy_to_close", "sell_to_close", "buy_to_cover"}
OPENING_SIDES = {"buy_to_open", "sell_to_open", "buy", "sell"}


def is_closing_side(side: str | None) -> bool:
    return side in CLOSING_SIDES


def is_opening_side(side: str | None) -> bool:
    return side in OPENING_SIDES


def normalize_close_side(side: str | None) -> Side | None:
    if side == "sell_to_close":
        return Side.SELL_TO_CLOSE
    if side in ("buy_to_close", "buy_to_cover"):
        return Side.BUY_TO_CLOSE
    return None


def infer_open_side(close_side: Side | None) -> Side | None:
    """The complementary opening side of a closing execution"""
    return OPEN_SIDE_FOR_CLOSE.get(close_side)


@dataclass
class BrokerLeg:
    symbol: str
    side: str
    status: str
    quantity: int = 0
    avg_fill_price: dec.Decimal | None = None
    exec_quantity: int = 0
    option_symbol: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> BrokerLeg:
        return cls(
            symbol=d.get("symbol", ""),
            side=d.get("side", ""),
            status=d.get("status", ""),
            quantity=int(d.get("quantity") or 0),
            avg_fill_price=safe_to_decimal(d.get("avg_fill_price")),
            exec_quantity=int(d.get("exec_quantity") or 0),
            option_symbol=d.get("option_symbol"),
        )

    def matches(self, symbol: str) -> bool:
        return symbol in (self.option_symbol, self.symbol)


@dataclass
class BrokerOrder:
    """A broker order history entry, optionally multi-leg"""
    id: str
    symbol: str
    side: str
    status: str
    quantity: int = 0
    avg_fill_price: dec.Decimal | None = None
    exec_quantity: int = 0
    create_date: str | None = None
    transaction_date: str | None = None
    option_symbol: str | None = None
    order_class: str | None = None
    legs: list[BrokerLeg] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> BrokerOrder:
        raw_legs = d.get("leg") or []
        if isinstance(raw_legs, dict):
            raw_legs = [raw_legs]
        return cls(
            id=str(d["id"]),
            symbol=d.get("symbol", ""),
            side=d.get("side", ""),
            status=d.get("status", ""),
            quantity=int(d.get("quantity") or 0),
            avg_fill_price=safe_to_decimal(d.get("avg_fill_price")),
            exec_quantity=int(d.get("exec_quantity") or 0),
            create_date=d.get("create_date"),
            transaction_date=d.get("transaction_date"),
            option_symbol=d.get("option_symbol"),
            order_class=d.get("class"),
            legs=[BrokerLeg.from_dict(l) for l in raw_legs],
        )

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"

    @property
    def traded_symbol(self) -> str:
        return self.option_symbol or self.symbol

    @property
    def executed_at(self) -> dt.datetime | None:
        return parse_ts(self.transaction_date or self.create_date)

    def touches(self, symbol: str) -> bool:
        return symbol in (self.option_symbol, self.symbol) or any(l.matches(symbol) for l in self.legs)


@dataclass
class Execution:
    side: str
    avg_fill_price: dec.Decimal | None
    exec_qty: int


def extract_execution(order: BrokerOrder, symbol: str) -> Execution | None:
    """The filled execution for one symbol, looking inside multi-leg orders first"""
    for leg in order.legs:
        if leg.matches(symbol) and leg.status == "filled":
            return Execution(leg.side, leg.avg_fill_price, leg.exec_quantity or leg.quantity)
    if order.traded_symbol == symbol and order.is_filled:
        return Execution(order.side, order.avg_fill_price, order.exec_quantity or order.quantity)
    return None


@dataclass
class OrderMatch:
    open_order: BrokerOrder | None = None
    close_order: BrokerOrder | None = None
    open_match: str | None = None
    close_match: str | None = None


def _heuristic_match(candidates, leg, side_check, reference, window) -> BrokerOrder | None:
    qty = abs(leg.quantity or 0)
    for order in candidates:
        execution = extract_execution(order, leg.symbol)
        if execution is None or not side_check(execution.side):
            continue
        if abs(execution.exec_qty - qty) > 1:
            continue
        executed_at = order.executed_at
        if executed_at is not None and abs(executed_at - reference) < window:
            return order
    return None


def find_matching_orders(leg: LegRecord, orders: list[BrokerOrder], window_minutes: int = 30,
                         now: dt.datetime | None = None) -> OrderMatch:
    """Exact order-id match first, then symbol + quantity + time proximity"""
    filled = [o for o in orders if o.is_filled]
    match = OrderMatch()

    if leg.close_order_id:
        match.close_order = next((o for o in filled if o.id == str(leg.close_order_id)), None)
        match.close_match = "exact" if match.close_order else None
    if leg.open_order_id:
        match.open_order = next((o for o in filled if o.id == str(leg.open_order_id)), None)
        match.open_match = "exact" if match.open_order else None

    window = dt.timedelta(minutes=window_minutes)
    candidates = [o for o in filled if o.touches(leg.symbol)]

    if match.close_order is None:
        exit_time = parse_ts(leg.exit_time) or now or now_utc()
        match.close_order = _heuristic_match(candidates, leg, is_closing_side, exit_time, window)
        match.close_match = "heuristic" if match.close_order else None

    entry_time = parse_ts(leg.entry_time)
    if match.open_order is None and entry_time is not None:
        match.open_order = _heuristic_match(candidates, leg, is_opening_side, entry_time, window)
        match.open_match = "heuristic" if match.open_order else None

    return match


@dataclass
class ReconcileResult:
    reconciled: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    verified: int = 0
    unverified: int = 0
    total_pnl: dec.Decimal = ZERO
    groups: list[str] = field(default_factory=list)


def reconcile_from_fills(store, orders: list[BrokerOrder], cfg: dict, recalculator=None,
                         now: dt.datetime | None = None) -> ReconcileResult:
    """Backfill direction, prices and order ids on rows needing reconciliation"""
    result = ReconcileResult()
    lifecycle = CloseLifecycle(store, cfg)
    window = cfg.get("match_window_minutes", 30)
    group_sizes: dict[str, int] = {}
    for leg in store.legs():
        if leg.trade_group_id:
            group_sizes[leg.trade_group_id] = group_sizes.get(leg.trade_group_id, 0) + 1

    touched_groups: list[str] = []
    for leg in [l for l in store.legs() if l.needs_reconcile]:
        try:
            match = find_matching_orders(leg, orders, window, now)
            if match.close_order is None:
                logger.info("No matching close order for %s, staying unverified", leg.symbol)
                result.skipped += 1
                continue

            close_exec = extract_execution(match.close_order, leg.symbol)
            close_side = normalize_close_side(close_exec.side) if close_exec else None
            open_side = infer_open_side(close_side)
            if close_exec is None or open_side is None:
                logger.info("No closing execution for %s on order %s", leg.symbol, match.close_order.id)
                result.skipped += 1
                continue

            open_price = leg.entry_price
            open_order_id = leg.open_order_id
            if match.open_order is not None:
                open_exec = extract_execution(match.open_order, leg.symbol)
                if open_exec is not None and open_exec.avg_fill_price is not None:
                    open_price = open_exec.avg_fill_price
                    open_order_id = match.open_order.id

            changes = {
                "open_side": open_side,
                "close_side": close_side,
                "open_order_id": open_order_id,
                "close_order_id": match.close_order.id,
                "entry_price": open_price,
                "exit_price": close_exec.avg_fill_price,
                "close_avg_fill_price": close_exec.avg_fill_price,
                "exit_price_source": ExitPriceSource.PER_LEG,
            }
            if close_exec.exec_qty:
                changes["quantity"] = close_exec.exec_qty
                changes["close_filled_qty"] = close_exec.exec_qty

            grouped = group_sizes.get(leg.trade_group_id or "", 0) > 1
            if not grouped:
                calc = calculate_pnl(
                    open_side, open_price, close_exec.avg_fill_price,
                    close_exec.exec_qty or leg.quantity, leg.multiplier or 100, leg.fees,
                )
                if calc is None:
                    result.errors.append(f"{leg.symbol}: P&L calculation failed")
                    result.skipped += 1
                    continue
                changes.update({
                    "pnl": calc.pnl,
                    "pnl_percent": calc.pnl_percent,
                    "pnl_formula": calc.formula,
                    "pnl_status": PnlStatus.COMPUTED,
                    "pnl_computed_at": now_iso(),
                    "needs_reconcile": False,
                })

            lifecycle.transition(leg, CloseStatus.FILLED, "reconciled from broker fills", changes)
            store.append_audit(AuditEvent(
                event_type="reconciled",
                trade_group_id=leg.trade_group_id,
                order_id=match.close_order.id,
                details=ReconcileDetails(
                    leg_id=leg.id,
                    matched_order_id=match.close_order.id,
                    match_type=match.close_match or "exact",
                    open_side=open_side.value,
                    close_side=close_side.value,
                ),
            ))
            if grouped:
                if leg.trade_group_id not in touched_groups:
                    touched_groups.append(leg.trade_group_id)
                logger.info("Backfilled %s (%s -> %s), group recompute pending", leg.symbol, open_side.value, close_side.value)
            else:
                logger.info("Reconciled %s: %s -> %s, P&L %s", leg.symbol, open_side.value, close_side.value, money(changes["pnl"]))
            result.reconciled += 1
        except LedgerError as exc:
            logger.error("Reconcile failed for %s: %s", leg.symbol, exc)
            result.errors.append(f"{leg.symbol}: {exc}")
            result.skipped += 1

    if recalculator is not None:
        for group_id in touched_groups:
            report = recalculator.recalculate_group(group_id)
            result.errors.extend(report.errors)
    result.groups = touched_groups

    legs = store.legs()
    verified = [l for l in legs if not l.needs_reconcile and l.pnl is not None]
    result.verified = len(verified)
    result.unverified = sum(1 for l in legs if l.needs_reconcile)
    result.total_pnl = sum((l.pnl for l in verified), ZERO)
    return result


@dataclass
class ImportResult:
    imported: int = 0
    errors: list[str] = field(default_factory=list)


def import_missing_trades(store, orders: list[BrokerOrder], cfg: dict) -> ImportResult:
    """Create rows for closing executions that were never journaled"""
    result = ImportResult()
    existing = {l.close_order_id for l in store.legs() if l.close_order_id}
    multiplier = cfg.get("default_multiplier", 100)

    by_symbol: dict[str, list[BrokerOrder]] = {}
    for order in orders:
        if order.is_filled:
            by_symbol.setdefault(order.traded_symbol, []).append(order)

    for symbol, symbol_orders in by_symbol.items():
        opens = sorted(
            (o for o in symbol_orders if is_opening_side(o.side) and o.executed_at is not None),
            key=lambda o: parse_ts(o.create_date) or o.executed_at,
        )
        for close in (o for o in symbol_orders if is_closing_side(o.side)):
            if close.id in existing:
                continue
            close_side = normalize_close_side(close.side)
            open_side = infer_open_side(close_side)
            if open_side is None:
                continue

            closed_at = parse_ts(close.create_date) or close.executed_at
            matching_open = next(
                (o for o in opens if closed_at is None or (parse_ts(o.create_date) or o.executed_at) < closed_at),
                None,
            )
            qty = close.exec_quantity or close.quantity
            open_price = matching_open.avg_fill_price if matching_open else None
            leg = LegRecord(
                id=uuid.uuid4().hex,
                symbol=symbol,
                underlying=underlying_of(symbol),
                quantity=qty,
                entry_time=(matching_open.transaction_date or matching_open.create_date) if matching_open else close.create_date,
                exit_time=close.transaction_date or close.create_date,
                entry_price=open_price,
                exit_price=close.avg_fill_price,
                open_side=open_side,
                close_side=close_side,
                open_order_id=matching_open.id if matching_open else None,
                close_order_id=close.id,
                multiplier=multiplier,
                close_status=CloseStatus.FILLED,
                close_avg_fill_price=close.avg_fill_price,
                close_filled_qty=qty,
                exit_price_source=ExitPriceSource.PER_LEG,
                needs_reconcile=True,
            )
            calc = None
            if open_price and close.avg_fill_price:
                calc = calculate_pnl(open_side, open_price, close.avg_fill_price, qty, multiplier)
            if calc is not None:
                leg.pnl = calc.pnl
                leg.pnl_percent = calc.pnl_percent
                leg.pnl_formula = calc.formula
                leg.pnl_status = PnlStatus.COMPUTED
                leg.pnl_computed_at = now_iso()
                leg.needs_reconcile = False

            try:
                store.insert_leg(leg)
            except LedgerError as exc:
                result.errors.append(f"Order {close.id}: {exc}")
                continue
            existing.add(close.id)
            result.imported += 1
            logger.info("Imported unjournaled close %s for %s", close.id, symbol)

    return result


@dataclass
class MissingFillsResult:
    recovered: int = 0
    still_missing: int = 0
    errors: list[str] = field(default_factory=list)


def reconcile_missing_fills(store, handler, order_lookup: Callable[[str], dict | None]) -> MissingFillsResult:
    """Re-query broker status for orders whose groups are stuck in missing_fills"""
    result = MissingFillsResult()
    stuck = [
        l for l in store.legs()
        if l.needs_reconcile and l.pnl_status == PnlStatus.MISSING_FILLS and l.close_order_id
    ]
    order_ids = list(dict.fromkeys(l.close_order_id for l in stuck))
    if not order_ids:
        logger.info("No trades with missing fills")
        return result
    logger.info("Found %d order(s) to reconcile", len(order_ids))

    for order_id in order_ids:
        try:
            status = order_lookup(order_id)
        except Exception as exc:
            result.errors.append(f"Order {order_id}: Failed to fetch - {exc}")
            result.still_missing += 1
            continue
        if not status or not status.get("close_status"):
            result.errors.append(f"Order {order_id}: Failed to fetch - no status")
            result.still_missing += 1
            continue
        if status["close_status"] != CloseStatus.FILLED.value:
            result.errors.append(f"Order {order_id}: Status is {status['close_status']}, not filled")
            result.still_missing += 1
            continue

        avg = safe_to_decimal(status.get("avg_fill_price"))
        leg_fills = {
            sym: LegFill(
                avg_fill_price=safe_to_decimal(lf.get("avg_fill_price")),
                filled_qty=int(lf.get("filled_qty") or 0),
                side=coerce_side(lf.get("side")),
            )
            for sym, lf in (status.get("leg_fills") or {}).items()
        }
        if not (avg is not None and avg > dec.Decimal("0.01")) and not leg_fills:
            logger.info("Order %s still missing fill data", order_id)
            result.still_missing += 1
            continue

        symbol = next(l.symbol for l in stuck if l.close_order_id == order_id)
        outcome = handler.handle(FillEvent(
            symbol=symbol,
            order_id=order_id,
            status=CloseStatus.FILLED,
            avg_fill_price=avg,
            filled_qty=int(status["filled_qty"]) if status.get("filled_qty") is not None else None,
            leg_fills=leg_fills,
            is_combo=True,
        ))
        refreshed = store.find_by_close_order(order_id)
        if outcome.success and all(l.pnl_status != PnlStatus.MISSING_FILLS for l in refreshed):
            logger.info("Recovered order %s", order_id)
            result.recovered += 1
        else:
            result.errors.extend(f"Order {order_id}: {e}" for e in outcome.errors)
            result.still_missing += 1

    logger.info("Missing fills: recovered=%d still_missing=%d errors=%d",
                result.recovered, result.still_missing, len(result.errors))
    return result
