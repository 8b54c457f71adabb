"""Booking, stay and payment state axes and their legal combinations.

The three axes are stored as separate columns. Only the triples listed in
LEGAL_STATES may ever be persisted; every transition checks its target
against the table before writing.
"""

from __future__ import annotations

from enum import Enum

from stayza.domain.errors import ConflictError


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DISPUTED = "DISPUTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StayStatus(str, Enum):
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"


class PaymentStatus(str, Enum):
    INITIATED = "INITIATED"
    HELD = "HELD"
    PARTIALLY_RELEASED = "PARTIALLY_RELEASED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


class LedgerParty(str, Enum):
    CUSTOMER = "CUSTOMER"
    ESCROW = "ESCROW"
    PLATFORM_WALLET = "PLATFORM_WALLET"
    REALTOR_WALLET = "REALTOR_WALLET"
    EXTERNAL_GATEWAY = "EXTERNAL_GATEWAY"


class EscrowEventType(str, Enum):
    HOLD_ROOM_FEE = "HOLD_ROOM_FEE"
    HOLD_SECURITY_DEPOSIT = "HOLD_SECURITY_DEPOSIT"
    RELEASE_CLEANING_FEE = "RELEASE_CLEANING_FEE"
    COLLECT_SERVICE_FEE = "COLLECT_SERVICE_FEE"
    RELEASE_ROOM_FEE_SPLIT = "RELEASE_ROOM_FEE_SPLIT"
    RELEASE_DEPOSIT_TO_CUSTOMER = "RELEASE_DEPOSIT_TO_CUSTOMER"
    PAY_REALTOR_FROM_DEPOSIT = "PAY_REALTOR_FROM_DEPOSIT"
    REFUND_ROOM_FEE_TO_CUSTOMER = "REFUND_ROOM_FEE_TO_CUSTOMER"
    REFUND_PARTIAL_TO_CUSTOMER = "REFUND_PARTIAL_TO_CUSTOMER"
    REFUND_PARTIAL_TO_REALTOR = "REFUND_PARTIAL_TO_REALTOR"
    CANCELLATION_FEE_TO_PLATFORM = "CANCELLATION_FEE_TO_PLATFORM"


class CheckinConfirmation(str, Enum):
    GUEST_CONFIRMED = "GUEST_CONFIRMED"
    REALTOR_CONFIRMED = "REALTOR_CONFIRMED"
    AUTO_FALLBACK = "AUTO_FALLBACK"


class DisputeSubject(str, Enum):
    ROOM_FEE = "ROOM_FEE"
    DEPOSIT = "DEPOSIT"


# Transfers out of escrow whose failure must be retried and escalated
CRITICAL_EVENT_TYPES = frozenset({
    EscrowEventType.RELEASE_ROOM_FEE_SPLIT,
    EscrowEventType.RELEASE_DEPOSIT_TO_CUSTOMER,
    EscrowEventType.PAY_REALTOR_FROM_DEPOSIT,
})

_B = BookingStatus
_S = StayStatus
_P = PaymentStatus

LEGAL_STATES: frozenset[tuple[BookingStatus, StayStatus | None, PaymentStatus]] = frozenset({
    (_B.PENDING, None, _P.INITIATED),
    (_B.ACTIVE, None, _P.HELD),
    # blocked-dates placeholders carry a zero-value settled payment
    (_B.ACTIVE, None, _P.SETTLED),
    (_B.ACTIVE, _S.CHECKED_IN, _P.HELD),
    (_B.ACTIVE, _S.CHECKED_IN, _P.PARTIALLY_RELEASED),
    (_B.ACTIVE, _S.CHECKED_OUT, _P.HELD),
    (_B.ACTIVE, _S.CHECKED_OUT, _P.PARTIALLY_RELEASED),
    (_B.DISPUTED, None, _P.HELD),
    (_B.DISPUTED, None, _P.PARTIALLY_RELEASED),
    (_B.COMPLETED, None, _P.SETTLED),
    (_B.CANCELLED, None, _P.INITIATED),
    (_B.CANCELLED, None, _P.FAILED),
    (_B.CANCELLED, None, _P.SETTLED),
})

TERMINAL_STATUSES = frozenset({_B.COMPLETED, _B.CANCELLED})
FINALIZED_PAYMENT_STATUSES = frozenset({
    _P.HELD,
    _P.PARTIALLY_RELEASED,
    _P.SETTLED,
})


def _coerce(status, stay_status, payment_status):
    return (
        BookingStatus(status),
        StayStatus(stay_status) if stay_status is not None else None,
        PaymentStatus(payment_status),
    )


def state_snapshot(status, stay_status, payment_status) -> dict:
    """Current state as returned to callers on a ConflictError."""
    return {
        "status": BookingStatus(status).value,
        "stay_status": StayStatus(stay_status).value if stay_status else None,
        "payment_status": PaymentStatus(payment_status).value,
    }


def is_legal_state(status, stay_status, payment_status) -> bool:
    return _coerce(status, stay_status, payment_status) in LEGAL_STATES


def assert_legal_state(status, stay_status, payment_status) -> None:
    """Raise ConflictError if the triple is not an enumerated legal state."""
    if not is_legal_state(status, stay_status, payment_status):
        raise ConflictError(
            "illegal booking/stay/payment combination",
            code="illegal_state",
            current_state=state_snapshot(status, stay_status, payment_status),
        )
