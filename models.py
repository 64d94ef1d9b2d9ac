# ═══════════════════════════════════════════════════════════════════
# models.py - Core data models
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations
import decimal as dec
from dataclasses import dataclass, field, fields
from enum import Enum

from utils import safe_to_decimal


class Side(str, Enum):
    SELL_TO_OPEN = "sell_to_open"
    BUY_TO_OPEN = "buy_to_open"
    BUY_TO_CLOSE = "buy_to_close"
    SELL_TO_CLOSE = "sell_to_close"


class CloseStatus(str, Enum):
    SUBMITTED = "submitted"
    FILLED = "filled"
    REJECTED = "rejected"
    CANCELED = "canceled"
    EXPIRED = "expired"
    TIMEOUT_UNKNOWN = "timeout_unknown"


class PnlStatus(str, Enum):
    PENDING = "pending"
    COMPUTED = "computed"
    FINAL = "final"
    MISSING_FILLS = "missing_fills"


class ExitPriceSource(str, Enum):
    PER_LEG = "PER_LEG"
    COMBO_NET = "COMBO_NET"
    PARTIAL = "PARTIAL"


class GroupHealth(str, Enum):
    OK = "ok"
    BROKEN = "broken"
    UNKNOWN = "unknown"


SHORT_SIDES = {"sell_to_open", "sell"}
LONG_SIDES = {"buy_to_open", "buy"}
IMMUTABLE_PNL_STATUSES = {PnlStatus.COMPUTED, PnlStatus.FINAL}

# Fields holding money/prices; stored as strings in the book
DECIMAL_FIELDS = {
    "entry_price", "exit_price", "fees", "entry_credit", "exit_debit",
    "entry_credit_dollars", "exit_debit_dollars", "resolved_entry_dollars", "resolved_exit_dollars",
    "close_avg_fill_price",
    "pnl", "pnl_percent",
}
ENUM_FIELDS = {
    "open_side": Side,
    "close_side": Side,
    "close_status": CloseStatus,
    "pnl_status": PnlStatus,
    "exit_price_source": ExitPriceSource,
}


def coerce_side(value) -> Side | None:
    """Parse a stored side, returning None for anything unrecognized"""
    if value is None or isinstance(value, Side):
        return value
    try:
        return Side(str(value).lower())
    except ValueError:
        return None


@dataclass
class LegRecord:
    """One option contract's position within a trade"""
    id: str
    symbol: str
    underlying: str = ""
    quantity: int = 1
    entry_price: dec.Decimal | None = None
    exit_price: dec.Decimal | None = None
    entry_time: str | None = None
    exit_time: str | None = None
    open_order_id: str | None = None
    close_order_id: str | None = None
    open_side: Side | None = None
    close_side: Side | None = None
    fees: dec.Decimal = dec.Decimal("0")
    multiplier: int = 100
    trade_group_id: str | None = None
    strategy_name: str | None = None
    strategy_type: str | None = None
    entry_credit: dec.Decimal | None = None
    exit_debit: dec.Decimal | None = None
    entry_credit_dollars: dec.Decimal | None = None
    exit_debit_dollars: dec.Decimal | None = None
    # last resolver output; never read back as an input
    resolved_entry_dollars: dec.Decimal | None = None
    resolved_exit_dollars: dec.Decimal | None = None
    close_status: CloseStatus | None = None
    close_submitted_at: str | None = None
    close_filled_at: str | None = None
    close_reject_reason: str | None = None
    close_avg_fill_price: dec.Decimal | None = None
    close_filled_qty: int | None = None
    pnl_status: PnlStatus = PnlStatus.PENDING
    pnl: dec.Decimal | None = None
    pnl_percent: dec.Decimal | None = None
    pnl_formula: str | None = None
    pnl_computed_at: str | None = None
    needs_reconcile: bool = False
    exit_price_source: ExitPriceSource | None = None
    exit_reason: str | None = None
    exit_trigger_reason: str | None = None
    notes: str | None = None
    revision: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> LegRecord:
        """Build a record from stored data, dropping unknown keys"""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in d.items() if k in known}
        for key in DECIMAL_FIELDS & data.keys():
            data[key] = safe_to_decimal(data[key])
        if data.get("fees") is None:
            data["fees"] = dec.Decimal("0")
        for key, enum_cls in ENUM_FIELDS.items():
            if data.get(key) is not None:
                data[key] = coerce_side(data[key]) if enum_cls is Side else enum_cls(data[key])
        if data.get("pnl_status") is None:
            data["pnl_status"] = PnlStatus.PENDING
        if not data.get("underlying"):
            data["underlying"] = underlying_of(data.get("symbol", ""))
        return cls(**data)

    @property
    def group_key(self) -> str:
        return self.trade_group_id or f"single:{self.id}"

    def is_short(self) -> bool | None:
        """True for sold legs, False for bought legs, None while unknown"""
        if self.open_side is None:
            return None
        return self.open_side.value in SHORT_SIDES

    def is_filled(self) -> bool:
        return self.close_status == CloseStatus.FILLED

    def is_pnl_finalized(self) -> bool:
        return self.pnl_status in IMMUTABLE_PNL_STATUSES

    def has_verified_direction(self) -> bool:
        """Single legs need both sides and a broker close order before P&L"""
        return (
            self.open_side is not None
            and self.close_side is not None
            and bool(self.close_order_id)
            and self.is_filled()
        )

    def is_fully_finalized(self) -> bool:
        """Counts toward statistics: filled, reconciled and with a pnl value"""
        return self.is_filled() and not self.needs_reconcile and self.pnl is not None


def underlying_of(symbol: str) -> str:
    """Root ticker of an OCC option symbol"""
    root = ""
    for ch in symbol or "":
        if not ch.isalpha():
            break
        root += ch
    return root.upper()


def primary_order(legs: list[LegRecord]) -> list[LegRecord]:
    """Legs sorted so the first is the group's primary leg"""
    return sorted(legs, key=lambda l: (l.symbol, l.id))


@dataclass
class TradeGroup:
    """Leg records sharing a trade_group_id, or one ungrouped leg"""
    key: str
    legs: list[LegRecord] = field(default_factory=list)

    @property
    def group_id(self) -> str | None:
        return self.legs[0].trade_group_id if self.legs else None

    @property
    def primary_leg(self) -> LegRecord:
        return primary_order(self.legs)[0]

    @property
    def siblings(self) -> list[LegRecord]:
        return primary_order(self.legs)[1:]

    @property
    def is_single(self) -> bool:
        return len(self.legs) == 1 and not self.legs[0].trade_group_id

    @property
    def strategy_type(self) -> str | None:
        return next((l.strategy_type for l in self.legs if l.strategy_type), None)

    @property
    def strategy_name(self) -> str | None:
        return next((l.strategy_name for l in self.legs if l.strategy_name), None)

    def contracts(self) -> int:
        return max((l.quantity or 0 for l in self.legs), default=0)

    def total_fees(self) -> dec.Decimal:
        return sum((l.fees or dec.Decimal("0") for l in self.legs), dec.Decimal("0"))

    def total_pnl(self) -> dec.Decimal | None:
        """Group P&L from finalized legs only"""
        if self.needs_reconcile():
            return None
        return sum((l.pnl for l in self.legs), dec.Decimal("0"))

    def needs_reconcile(self) -> bool:
        return any(not l.is_fully_finalized() for l in self.legs)

    def all_filled(self) -> bool:
        return all(l.is_filled() for l in self.legs)


@dataclass
class LegFill:
    """Per-symbol fill detail of a combo order"""
    avg_fill_price: dec.Decimal
    filled_qty: int
    side: Side | None = None


@dataclass
class FillEvent:
    """Inbound broker order-status callback"""
    symbol: str
    order_id: str
    side: Side | None = None
    avg_fill_price: dec.Decimal | None = None
    filled_qty: int | None = None
    timestamp: str | None = None
    status: CloseStatus = CloseStatus.FILLED
    fees: dec.Decimal | None = None
    reject_reason: str | None = None
    is_combo: bool = False
    leg_fills: dict[str, LegFill] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> FillEvent:
        leg_fills = {
            sym: LegFill(
                avg_fill_price=safe_to_decimal(lf.get("avg_fill_price")),
                filled_qty=int(lf.get("filled_qty") or 0),
                side=coerce_side(lf.get("side")),
            )
            for sym, lf in (d.get("leg_fills") or {}).items()
        }
        return cls(
            symbol=d["symbol"],
            order_id=str(d["order_id"]),
            side=coerce_side(d.get("side")),
            avg_fill_price=safe_to_decimal(d.get("avg_fill_price")),
            filled_qty=int(d["filled_qty"]) if d.get("filled_qty") is not None else None,
            timestamp=d.get("timestamp"),
            status=CloseStatus(d.get("status", "filled")),
            fees=safe_to_decimal(d.get("fees")),
            reject_reason=d.get("reject_reason"),
            is_combo=bool(d.get("is_combo", False)),
            leg_fills=leg_fills,
        )
