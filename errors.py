# ═══════════════════════════════════════════════════════════════════
# errors.py - Error taxonomy for the P&L ledger
# ═══════════════════════════════════════════════════════════════════
"""
Error taxonomy.

CATEGORIES:
1. Missing data      - a required price/side/quantity is absent
2. Ambiguous data    - leg topology or direction cannot be determined
3. Corrupted history - legacy stored values with unit/scale mismatches
                       (corrected in place, never raised)
4. Persistence       - a write to the ledger store failed or was refused
5. Lifecycle         - an illegal close-order state transition

None of these are retryable in place: ambiguous input stays ambiguous until
fresh broker data arrives, so the orchestrator simply re-runs on its next pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    MISSING_DATA = "MISSING_DATA"
    AMBIGUOUS_DIRECTION = "AMBIGUOUS_DIRECTION"
    CORRUPTED_HISTORICAL = "CORRUPTED_HISTORICAL"
    PERSISTENCE = "PERSISTENCE"
    LIFECYCLE = "LIFECYCLE"


@dataclass(frozen=True)
class ErrorCodeInfo:
    """Registry entry describing an error code"""
    code: str
    category: ErrorCategory
    description: str
    operator_action: str


ERROR_CODES: dict[str, ErrorCodeInfo] = {
    "MISSING_FILLS": ErrorCodeInfo(
        "MISSING_FILLS", ErrorCategory.MISSING_DATA,
        "Fill prices or sides needed for P&L are absent",
        "Wait for the next reconcile pass or import broker order history",
    ),
    "MISSING_ENTRY": ErrorCodeInfo(
        "MISSING_ENTRY", ErrorCategory.MISSING_DATA,
        "No entry credit could be resolved for the group",
        "Record the group entry credit in the position group map",
    ),
    "AMBIGUOUS_TOPOLOGY": ErrorCodeInfo(
        "AMBIGUOUS_TOPOLOGY", ErrorCategory.AMBIGUOUS_DIRECTION,
        "Leg shape does not match any known strategy topology",
        "Reconcile against broker executions",
    ),
    "UNIT_CORRECTED": ErrorCodeInfo(
        "UNIT_CORRECTED", ErrorCategory.CORRUPTED_HISTORICAL,
        "A stored value was rescaled to dollars",
        "None, correction is recorded in the formula trace",
    ),
    "WRITE_FAILED": ErrorCodeInfo(
        "WRITE_FAILED", ErrorCategory.PERSISTENCE,
        "The ledger store rejected or failed a row write",
        "Re-run recalculation",
    ),
    "STALE_WRITE": ErrorCodeInfo(
        "STALE_WRITE", ErrorCategory.PERSISTENCE,
        "A write was based on an outdated read of the row",
        "None, the newer result is kept",
    ),
    "IMMUTABLE_ROW": ErrorCodeInfo(
        "IMMUTABLE_ROW", ErrorCategory.PERSISTENCE,
        "Non-forced write to a computed/final P&L row",
        "Use a forced recompute if the stored value is known to be wrong",
    ),
    "BAD_TRANSITION": ErrorCodeInfo(
        "BAD_TRANSITION", ErrorCategory.LIFECYCLE,
        "Close status transition not allowed",
        "Check the broker order status manually",
    ),
}


class LedgerError(Exception):
    """Base class for all ledger errors"""
    code = "WRITE_FAILED"

    def __init__(self, message: str, *, leg_id: str | None = None, group_id: str | None = None):
        super().__init__(message)
        self.leg_id = leg_id
        self.group_id = group_id

    @property
    def info(self) -> ErrorCodeInfo:
        return ERROR_CODES[self.code]

    @property
    def category(self) -> ErrorCategory:
        return self.info.category


class MissingDataError(LedgerError):
    code = "MISSING_FILLS"


class AmbiguousDirectionError(LedgerError):
    code = "AMBIGUOUS_TOPOLOGY"


class PersistenceError(LedgerError):
    code = "WRITE_FAILED"


class StaleWriteError(PersistenceError):
    code = "STALE_WRITE"


class ImmutableRecordError(PersistenceError):
    code = "IMMUTABLE_ROW"


class InvalidTransitionError(LedgerError):
    code = "BAD_TRANSITION"

