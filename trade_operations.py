# ═══════════════════════════════════════════════════════════════════
# trade_operations.py - Journal commands and verified-only queries
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations

import datetime as dt
import decimal as dec
import logging
import uuid
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

from config import get_strategy_type
from errors import LedgerError
from lifecycle import RECOVERY_STATES
from models import CloseStatus, LegRecord, PnlStatus, TradeGroup
from pnl import calculate_pnl
from utils import ZERO, now_iso, now_utc, parse_ts, safe_to_decimal, short_id

logger = logging.getLogger(__name__)

HUNDRED = dec.Decimal("100")


@dataclass
class SaveResult:
    success: bool
    id: str | None = None
    duplicate: bool = False
    error: str | None = None


@dataclass
class GroupSaveResult:
    success: bool
    group_id: str | None = None
    ids: list[str] = field(default_factory=list)
    duplicates: int = 0
    error: str | None = None


@dataclass
class DuplicateCandidate:
    id: str
    symbol: str
    close_order_id: str
    exit_time: str | None
    pnl: dec.Decimal
    reason: str


@dataclass
class TradeStats:
    total_trades: int = 0
    total_legs: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: dec.Decimal = ZERO
    win_rate: dec.Decimal = ZERO
    avg_winner: dec.Decimal = ZERO
    avg_loser: dec.Decimal = ZERO
    needs_reconcile_count: int = 0
    verified_count: int = 0


def _average(values: list[dec.Decimal]) -> dec.Decimal:
    return sum(values, ZERO) / len(values) if values else ZERO


def _win_rate(winners: int, total: int) -> dec.Decimal:
    return dec.Decimal(winners) / dec.Decimal(total) * HUNDRED if total else ZERO


def _latest_ts(group: TradeGroup) -> dt.datetime:
    stamps = [parse_ts(l.exit_time or l.close_submitted_at or l.entry_time) for l in group.legs]
    return max((s for s in stamps if s is not None), default=dt.datetime.min.replace(tzinfo=dt.timezone.utc))


class TradeOperations:
    """Journal writes and the verified-only query surface over a LedgerStore"""

    def __init__(self, store, cfg, recalculator=None):
        self.store = store
        self.cfg = cfg
        self.recalculator = recalculator

    # ═══════════════════════════════════════════════════════════════
    # Saving
    # ═══════════════════════════════════════════════════════════════

    def _build_leg(self, data: dict, **overrides) -> LegRecord:
        raw = {"multiplier": self.cfg.get("default_multiplier", 100), **data, **overrides}
        raw["id"] = raw.get("id") or uuid.uuid4().hex
        raw["strategy_type"] = raw.get("strategy_type") or get_strategy_type(raw.get("strategy_name"), self.cfg)
        return LegRecord.from_dict(raw)

    def _existing(self, leg: LegRecord) -> LegRecord | None:
        if not leg.close_order_id:
            return None
        return self.store.find(leg.symbol, leg.close_order_id)

    def save_trade(self, data: dict) -> SaveResult:
        """Journal one single-leg trade; P&L only when the direction is verified"""
        leg = self._build_leg(data)
        existing = self._existing(leg)
        if existing is not None:
            logger.info("Trade already exists: %s %s", leg.symbol, leg.close_order_id)
            return SaveResult(True, id=existing.id, duplicate=True)

        leg.close_status = leg.close_status or CloseStatus.SUBMITTED
        leg.close_submitted_at = leg.close_submitted_at or now_iso()
        leg.pnl = leg.pnl_percent = leg.pnl_formula = leg.pnl_computed_at = None
        leg.pnl_status = PnlStatus.PENDING
        leg.needs_reconcile = True

        if leg.has_verified_direction() and leg.entry_price is not None and leg.exit_price is not None:
            calc = calculate_pnl(leg.open_side, leg.entry_price, leg.exit_price,
                                 leg.quantity, leg.multiplier, leg.fees)
            if calc is not None:
                leg.pnl, leg.pnl_percent, leg.pnl_formula = calc.pnl, calc.pnl_percent, calc.formula
                leg.pnl_status = PnlStatus.COMPUTED
                leg.pnl_computed_at = now_iso()
                leg.needs_reconcile = False
        else:
            logger.info("Direction of %s not verified, saved without P&L", leg.symbol)

        try:
            saved = self.store.insert_leg(leg)
        except LedgerError as exc:
            logger.error("Error saving trade %s: %s", leg.symbol, exc)
            return SaveResult(False, error=str(exc))
        return SaveResult(True, id=saved.id)

    def save_trade_group(self, legs: list[dict], entry_credit=None) -> GroupSaveResult:
        """Journal the legs of one multi-leg position under a new trade_group_id"""
        if not legs:
            return GroupSaveResult(False, error="No trades to save")

        group_id = uuid.uuid4().hex
        result = GroupSaveResult(True, group_id=group_id)
        ledger_legs = {}
        for data in legs:
            leg = self._build_leg(
                data,
                trade_group_id=group_id,
                pnl=None, pnl_percent=None, pnl_formula=None, pnl_computed_at=None,
                pnl_status=PnlStatus.PENDING.value,
                needs_reconcile=True,
            )
            if self._existing(leg) is not None:
                logger.warning("Duplicate leg %s %s skipped", leg.symbol, leg.close_order_id)
                result.duplicates += 1
                continue
            try:
                saved = self.store.insert_leg(leg)
            except LedgerError as exc:
                logger.error("Error saving leg %s of group %s: %s", leg.symbol, short_id(group_id), exc)
                result.success = False
                result.error = str(exc)
                continue
            result.ids.append(saved.id)
            if saved.open_side is not None:
                ledger_legs[saved.symbol] = {"leg_side": saved.open_side.value, "leg_qty": saved.quantity}

        credit = safe_to_decimal(entry_credit)
        if credit is not None and result.ids:
            self.store.set_group_entry_credit(group_id, credit, ledger_legs)

        if self.recalculator is not None and result.ids:
            report = self.recalculator.recalculate_group(group_id)
            if report.errors:
                result.error = "; ".join(report.errors)
        logger.info("Saved group %s with %d leg(s)", short_id(group_id), len(result.ids))
        return result

    def save_pending_close(self, data: dict) -> SaveResult:
        """Record a submitted close order before the broker confirms it"""
        leg = self._build_leg(
            data,
            close_status=CloseStatus.SUBMITTED.value,
            close_submitted_at=now_iso(),
            exit_price=None,
            exit_time=None,
            pnl=None, pnl_percent=None, pnl_formula=None,
            pnl_status=PnlStatus.PENDING.value,
            needs_reconcile=True,
        )
        existing = self._existing(leg)
        if existing is not None:
            logger.info("Pending close already exists: %s %s", leg.symbol, leg.close_order_id)
            return SaveResult(True, id=existing.id, duplicate=True)
        try:
            saved = self.store.insert_leg(leg)
        except LedgerError as exc:
            logger.error("Error saving pending close %s: %s", leg.symbol, exc)
            return SaveResult(False, error=str(exc))
        return SaveResult(True, id=saved.id)

    def update_trade_notes(self, trade_id: str, notes: str) -> LegRecord:
        return self.store.update_leg(trade_id, {"notes": notes})

    # ═══════════════════════════════════════════════════════════════
    # Hygiene
    # ═══════════════════════════════════════════════════════════════

    def detect_duplicates(self) -> list[DuplicateCandidate]:
        """Rows sharing (symbol, close_order_id); the earliest row is kept"""
        legs = sorted(self.store.legs(), key=lambda l: (l.exit_time or "", l.id))
        seen: dict[str, str] = {}
        candidates = []
        for leg in legs:
            if not leg.close_order_id:
                continue
            key = f"{leg.symbol}:{leg.close_order_id}"
            if key in seen:
                candidates.append(DuplicateCandidate(
                    id=leg.id,
                    symbol=leg.symbol,
                    close_order_id=leg.close_order_id,
                    exit_time=leg.exit_time,
                    pnl=leg.pnl or ZERO,
                    reason=f"Duplicate close_order_id (first: {short_id(seen[key])})",
                ))
            else:
                seen[key] = leg.id
        return candidates

    def delete_duplicates(self, trade_ids: list[str]) -> int:
        if not trade_ids:
            return 0
        deleted = self.store.delete_legs(trade_ids)
        logger.info("Deleted %d duplicate trade(s)", deleted)
        return deleted

    def sanitize_non_filled_trades(self) -> int:
        """Null any P&L left on rows whose close never filled"""
        sanitized = 0
        for leg in self.store.legs():
            if leg.is_filled() or (leg.pnl is None and leg.pnl_percent is None):
                continue
            try:
                self.store.update_leg(leg.id, {
                    "pnl": None,
                    "pnl_percent": None,
                    "pnl_formula": None,
                    "pnl_computed_at": None,
                    "pnl_status": PnlStatus.PENDING,
                    "needs_reconcile": True,
                    "resolved_entry_dollars": None,
                    "resolved_exit_dollars": None,
                }, force=True)
            except LedgerError as exc:
                logger.error("Could not sanitize %s: %s", short_id(leg.id), exc)
                continue
            sanitized += 1
        logger.info("Sanitized %d trade(s) with non-filled close status", sanitized)
        return sanitized

    # ═══════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════

    def grouped_listing(self, limit: int = 50) -> list[TradeGroup]:
        """Groups and single legs, most recently closed first"""
        groups = sorted(self.store.groups(), key=_latest_ts, reverse=True)
        return groups[:limit]

    def get_trade_stats(self, count_by_leg: bool = False) -> TradeStats:
        """Statistics over fully finalized rows only"""
        legs = self.store.legs()
        finalized = [l for l in legs if l.is_fully_finalized()]
        stats = TradeStats(total_legs=len(finalized))

        if count_by_leg:
            pnls = [l.pnl for l in finalized]
            stats.total_trades = stats.verified_count = len(finalized)
            stats.needs_reconcile_count = len(legs) - len(finalized)
        else:
            groups = self.store.groups()
            complete = [g for g in groups if not g.needs_reconcile()]
            pnls = [g.total_pnl() for g in complete]
            stats.total_trades = stats.verified_count = len(complete)
            stats.needs_reconcile_count = len(groups) - len(complete)

        winners = [p for p in pnls if p > 0]
        losers = [p for p in pnls if p < 0]
        stats.winning_trades = len(winners)
        stats.losing_trades = len(losers)
        stats.total_pnl = sum(pnls, ZERO)
        stats.win_rate = _win_rate(len(winners), len(pnls))
        stats.avg_winner = _average(winners)
        stats.avg_loser = _average(losers)
        return stats

    def today_start(self, now: dt.datetime | None = None) -> dt.datetime:
        """Midnight of the current trading day, as an aware datetime"""
        tz = ZoneInfo(self.cfg.get("timezone", "America/New_York"))
        local = (now or now_utc()).astimezone(tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def get_realized_today_pnl(self, now: dt.datetime | None = None) -> tuple[dec.Decimal, int]:
        """Realized P&L and row count for closes filled since local midnight"""
        start = self.today_start(now)
        rows = []
        for leg in self.store.legs():
            filled_at = parse_ts(leg.close_filled_at)
            if leg.is_fully_finalized() and filled_at is not None and filled_at >= start:
                rows.append(leg)
        return sum((l.pnl for l in rows), ZERO), len(rows)

    def trades_needing_reconciliation(self) -> list[LegRecord]:
        legs = [l for l in self.store.legs() if l.needs_reconcile]
        return sorted(legs, key=lambda l: l.exit_time or "", reverse=True)

    def trades_needing_recovery(self) -> list[LegRecord]:
        """Closes that failed or timed out and need a manual decision"""
        legs = [l for l in self.store.legs() if l.close_status in RECOVERY_STATES]
        return sorted(legs, key=lambda l: l.close_submitted_at or "", reverse=True)

    def trades_with_pending_close(self) -> list[LegRecord]:
        legs = [l for l in self.store.legs() if l.close_status == CloseStatus.SUBMITTED]
        return sorted(legs, key=lambda l: l.close_submitted_at or "")
