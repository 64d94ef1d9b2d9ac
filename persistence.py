# ═══════════════════════════════════════════════════════════════════
# persistence.py - JSON ledger store with revisions and inbox import
# ═══════════════════════════════════════════════════════════════════

from __future__ import annotations

import dataclasses
import datetime as dt
import decimal as dec
import json
import logging
import os
import pathlib
import tempfile
import threading
import uuid
from dataclasses import asdict
from typing import Callable, Iterable

from audit import AuditEvent
from errors import ImmutableRecordError, PersistenceError, StaleWriteError
from models import (
    IMMUTABLE_PNL_STATUSES, FillEvent, LegRecord, Side, TradeGroup, coerce_side, primary_order,
)
from utils import safe_to_decimal

logger = logging.getLogger(__name__)

BOOK = pathlib.Path("trades.json")
INBOX = pathlib.Path("inbox")
ARCHIVE = pathlib.Path("archive")

# Non-forced writes to these fields are refused once a row is computed/final
GUARDED_FIELDS = {"pnl", "pnl_percent", "pnl_formula", "pnl_status"}


def _serialize(obj):
    if isinstance(obj, (dt.datetime, dt.date)):
        return obj.isoformat()
    return str(obj)


def leg_to_dict(leg: LegRecord) -> dict:
    return asdict(leg)


class LedgerStore:
    """Leg records, the group entry-credit ledger and the audit trail in one JSON book"""

    def __init__(self, path: pathlib.Path | str = BOOK,
                 inbox: pathlib.Path | str = INBOX, archive: pathlib.Path | str = ARCHIVE):
        self.path = pathlib.Path(path)
        self.inbox = pathlib.Path(inbox)
        self.archive = pathlib.Path(archive)
        self._lock = threading.RLock()
        self._legs: dict[str, LegRecord] = {}
        self._group_map: dict[str, dict] = {}
        self._audit: list[AuditEvent] = []
        self._load()

    # ── loading / saving ────────────────────────────────────────────

    def _load(self):
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Cannot read ledger {self.path}: {exc}") from exc

        # Older books are a bare list of leg rows
        if isinstance(raw, list):
            raw = {"legs": raw}

        for d in raw.get("legs", []):
            leg = LegRecord.from_dict(d)
            self._legs[leg.id] = leg
        self._group_map = raw.get("position_group_map", {}) or {}
        self._audit = [AuditEvent.from_dict(e) for e in raw.get("audit", [])]

    def _save(self, legs: dict[str, LegRecord] | None = None, group_map: dict[str, dict] | None = None,
              audit: list[AuditEvent] | None = None):
        """Write the book with any replacement state, adopting it only once the write succeeds"""
        legs = self._legs if legs is None else legs
        group_map = self._group_map if group_map is None else group_map
        audit = self._audit if audit is None else audit
        data = {
            "legs": [leg_to_dict(l) for l in legs.values()],
            "position_group_map": group_map,
            "audit": [e.to_dict() for e in audit],
        }
        text = json.dumps(data, default=_serialize, indent=2)
        directory = self.path.parent if str(self.path.parent) else pathlib.Path(".")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceError(f"Cannot write ledger {self.path}: {exc}") from exc
        self._legs, self._group_map, self._audit = legs, group_map, audit

    # ── queries ─────────────────────────────────────────────────────

    def legs(self) -> list[LegRecord]:
        """Snapshot of all leg rows"""
        with self._lock:
            return [dataclasses.replace(l) for l in self._legs.values()]

    def get_leg(self, leg_id: str) -> LegRecord | None:
        with self._lock:
            leg = self._legs.get(leg_id)
            return dataclasses.replace(leg) if leg else None

    def find_by_close_order(self, order_id: str) -> list[LegRecord]:
        return [l for l in self.legs() if l.close_order_id == str(order_id)]

    def find(self, symbol: str, close_order_id: str) -> LegRecord | None:
        return next(
            (l for l in self.legs() if l.symbol == symbol and l.close_order_id == str(close_order_id)),
            None,
        )

    def group_legs(self, group_id: str) -> list[LegRecord]:
        return primary_order([l for l in self.legs() if l.trade_group_id == group_id])

    def groups(self) -> list[TradeGroup]:
        """Legs bucketed by trade_group_id; ungrouped legs are their own group"""
        buckets: dict[str, list[LegRecord]] = {}
        for leg in self.legs():
            buckets.setdefault(leg.group_key, []).append(leg)
        return [TradeGroup(key=k, legs=primary_order(v)) for k, v in sorted(buckets.items())]

    def group(self, key: str) -> TradeGroup | None:
        """Group by trade_group_id, or a single leg by id"""
        key = key.removeprefix("single:")
        legs = self.group_legs(key)
        if legs:
            return TradeGroup(key=key, legs=legs)
        leg = self.get_leg(key)
        if leg is None:
            return None
        if leg.trade_group_id:
            return TradeGroup(key=leg.trade_group_id, legs=self.group_legs(leg.trade_group_id))
        return TradeGroup(key=leg.group_key, legs=[leg])

    # ── group entry-credit ledger ───────────────────────────────────

    def group_entry_credit(self, group_id: str | None) -> dec.Decimal | None:
        if not group_id:
            return None
        with self._lock:
            entry = self._group_map.get(group_id)
            return safe_to_decimal(entry.get("entry_credit")) if entry else None

    def group_leg_side(self, group_id: str | None, symbol: str) -> Side | None:
        with self._lock:
            entry = self._group_map.get(group_id or "") or {}
            leg = (entry.get("legs") or {}).get(symbol) or {}
            return coerce_side(leg.get("leg_side"))

    def set_group_entry_credit(self, group_id: str, entry_credit: dec.Decimal,
                               legs: dict[str, dict] | None = None):
        """Record the authoritative entry credit (dollars) for a group"""
        with self._lock:
            entry = dict(self._group_map.get(group_id) or {})
            entry["entry_credit"] = str(entry_credit)
            if legs:
                entry["legs"] = {**(entry.get("legs") or {}), **legs}
            self._save(group_map={**self._group_map, group_id: entry})

    # ── writes ──────────────────────────────────────────────────────

    def insert_leg(self, leg: LegRecord) -> LegRecord:
        with self._lock:
            if not leg.id:
                leg.id = uuid.uuid4().hex
            if leg.id in self._legs:
                raise PersistenceError(f"Leg {leg.id} already exists", leg_id=leg.id)
            stored = dataclasses.replace(leg, revision=1)
            self._save(legs={**self._legs, leg.id: stored})
            return dataclasses.replace(stored)

    def update_leg(self, leg_id: str, changes: dict, *, force: bool = False,
                   expected_revision: int | None = None) -> LegRecord:
        """Apply field changes to one row; a no-op change leaves the revision alone"""
        with self._lock:
            current = self._legs.get(leg_id)
            if current is None:
                raise PersistenceError(f"Leg {leg_id} not found", leg_id=leg_id)
            if expected_revision is not None and current.revision != expected_revision:
                raise StaleWriteError(
                    f"Leg {leg_id} is at revision {current.revision}, expected {expected_revision}",
                    leg_id=leg_id, group_id=current.trade_group_id,
                )

            diff = {k: v for k, v in changes.items() if getattr(current, k) != v}
            if not diff:
                return dataclasses.replace(current)

            if not force and current.pnl_status in IMMUTABLE_PNL_STATUSES and GUARDED_FIELDS & diff.keys():
                raise ImmutableRecordError(
                    f"Leg {leg_id} P&L is {current.pnl_status.value}; use a forced recompute",
                    leg_id=leg_id, group_id=current.trade_group_id,
                )

            updated = dataclasses.replace(current, **diff, revision=current.revision + 1)
            self._save(legs={**self._legs, leg_id: updated})
            return dataclasses.replace(updated)

    def delete_legs(self, leg_ids: Iterable[str]) -> int:
        with self._lock:
            doomed = set(leg_ids) & self._legs.keys()
            if doomed:
                self._save(legs={k: v for k, v in self._legs.items() if k not in doomed})
            return len(doomed)

    def delete_leg(self, leg_id: str) -> bool:
        return self.delete_legs([leg_id]) == 1

    # ── audit trail ─────────────────────────────────────────────────

    def append_audit(self, event: AuditEvent):
        with self._lock:
            self._save(audit=[*self._audit, event])

    def audit_events(self, group_id: str | None = None) -> list[AuditEvent]:
        with self._lock:
            if group_id is None:
                return list(self._audit)
            return [e for e in self._audit if e.trade_group_id == group_id]

    # ── inbox ───────────────────────────────────────────────────────

    def import_inbox_files(self, apply: Callable[[list[FillEvent]], None] | None = None) -> list[FillEvent]:
        """Read fill-event files from the inbox and move them to the archive

        A file that cannot be parsed is logged and left in the inbox. When
        ``apply`` is given, a file is archived only after its events were
        applied; if ``apply`` raises, the file stays for the next import.
        """
        if not self.inbox.exists():
            return []
        self.archive.mkdir(parents=True, exist_ok=True)

        events: list[FillEvent] = []
        for fp in sorted(self.inbox.glob("*.json")):
            try:
                payload = json.loads(fp.read_text())
                raws = payload if isinstance(payload, list) else [payload]
                parsed = [FillEvent.from_dict(raw) for raw in raws]
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.error("Skipping unreadable inbox file %s: %s", fp.name, exc)
                continue
            if apply is not None:
                apply(parsed)
            fp.rename(self.archive / fp.name)
            events.extend(parsed)
            logger.info("Imported %d fill event(s) from %s", len(parsed), fp.name)
        return events
