"""Per-transfer settlement state machine.

    PENDING -> RETRYING(n) -> CONFIRMED | ESCALATED -> RESOLVED
    PENDING -> FAILED            (non-critical movements)

The attempt count and current reference live on the settlement_transfers
row, so a restart never loses retry progress.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class FailureAction(str, Enum):
    RETRY = "RETRY"
    ESCALATE = "ESCALATE"
    FAIL = "FAIL"
    IGNORE = "IGNORE"


IN_FLIGHT_STATUSES = frozenset({TransferStatus.PENDING, TransferStatus.RETRYING})
CLOSED_STATUSES = frozenset({
    TransferStatus.CONFIRMED,
    TransferStatus.FAILED,
    TransferStatus.ESCALATED,
    TransferStatus.RESOLVED,
})

_ALLOWED = {
    TransferStatus.PENDING: {
        TransferStatus.RETRYING,
        TransferStatus.CONFIRMED,
        TransferStatus.FAILED,
        TransferStatus.ESCALATED,
    },
    TransferStatus.RETRYING: {
        TransferStatus.RETRYING,
        TransferStatus.CONFIRMED,
        TransferStatus.ESCALATED,
    },
    # a late success after escalation still counts as recovered
    TransferStatus.ESCALATED: {TransferStatus.CONFIRMED, TransferStatus.RESOLVED},
    TransferStatus.FAILED: {TransferStatus.CONFIRMED, TransferStatus.RESOLVED},
    TransferStatus.CONFIRMED: set(),
    TransferStatus.RESOLVED: set(),
}


class InvalidTransferTransition(Exception):
    """Raised when a transfer status change is not allowed."""


def assert_transition(current: str, target: str) -> None:
    if TransferStatus(target) not in _ALLOWED[TransferStatus(current)]:
        raise InvalidTransferTransition(f"{current} -> {target}")


@dataclass(frozen=True)
class FailureDecision:
    action: FailureAction
    next_status: TransferStatus | None
    next_attempt: int
    next_reference: str | None


def retry_reference(base_reference: str, attempt: int) -> str:
    return f"{base_reference}_r{attempt}"


def decide_after_failure(
    transfer: dict,
    *,
    failed_reference: str,
    critical: bool,
    retry_cap: int,
) -> FailureDecision:
    """Decide what a failure notification means for this transfer.

    Failures for a superseded reference, or for a transfer that is already
    closed, are ignored.
    """
    attempts = int(transfer["attempts"])
    status = TransferStatus(transfer["status"])

    if status not in IN_FLIGHT_STATUSES or failed_reference != transfer["reference"]:
        return FailureDecision(FailureAction.IGNORE, None, attempts, None)

    if not critical:
        return FailureDecision(FailureAction.FAIL, TransferStatus.FAILED, attempts, None)

    if attempts >= retry_cap:
        return FailureDecision(FailureAction.ESCALATE, TransferStatus.ESCALATED, attempts, None)

    next_attempt = attempts + 1
    return FailureDecision(
        FailureAction.RETRY,
        TransferStatus.RETRYING,
        next_attempt,
        retry_reference(transfer["base_reference"], next_attempt),
    )
