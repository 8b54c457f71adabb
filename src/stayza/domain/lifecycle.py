"""Booking lifecycle - the transitions that move money.

Every operation runs in one transaction:
lock booking + payment -> re-check state -> compute -> ledger entries ->
state update (checked against the legal state table) -> outbox event.

Outbound payouts are only recorded here (settlement_transfers rows in
PENDING). Callers hand the returned transfer ids to
settlement.dispatch_transfers once the transaction has committed.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from stayza.domain.actors import (
    ROLE_ADMIN,
    ROLE_GUEST,
    ROLE_REALTOR,
    ROLE_SYSTEM,
    SYSTEM_ACTOR,
    Actor,
)
from stayza.domain.dispute_window import guest_window, realtor_window, windows_for
from stayza.domain.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from stayza.domain.quote import Quote, calculate_quote, round_kobo
from stayza.domain.refund_policy import RefundCalculation, calculate_refund
from stayza.domain.states import (
    BookingStatus,
    CheckinConfirmation,
    DisputeSubject,
    EscrowEventType,
    LedgerParty,
    PaymentStatus,
    StayStatus,
    TERMINAL_STATUSES,
    assert_legal_state,
    state_snapshot,
)
from stayza.infra.db import txn
from stayza.infra.finance_settings import FinanceConfig, load_finance_config
from stayza.infra.repositories.bookings_repository import (
    get_booking,
    has_overlapping_booking,
    insert_booking,
    realtor_confirmed_volume,
    update_booking,
)
from stayza.infra.repositories.escrow_repository import list_timeline, record
from stayza.infra.repositories.outbox_repository import PRIORITY_NORMAL, emit_event
from stayza.infra.repositories.payments_repository import (
    get_payment_by_booking,
    insert_payment,
    update_payment,
)
from stayza.infra.repositories.properties_repository import get_property, get_realtor
from stayza.infra.repositories.transfers_repository import insert_transfer
from stayza.infra.time import local_instant, month_bounds, utc_now
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context

logger = get_logger(__name__)

_KEEP = object()

_B = BookingStatus
_P = PaymentStatus

_PAYOUT_PREFIXES = {
    EscrowEventType.RELEASE_ROOM_FEE_SPLIT: "room_fee",
    EscrowEventType.RELEASE_DEPOSIT_TO_CUSTOMER: "deposit",
    EscrowEventType.PAY_REALTOR_FROM_DEPOSIT: "deposit_realtor",
    EscrowEventType.REFUND_ROOM_FEE_TO_CUSTOMER: "refund_room",
    EscrowEventType.REFUND_PARTIAL_TO_CUSTOMER: "refund_partial",
    EscrowEventType.REFUND_PARTIAL_TO_REALTOR: "cancel_realtor",
}


# ---------------------------------------------------------------------------
# Shared transition helpers (also used by settlement)
# ---------------------------------------------------------------------------


def current_state(booking: dict, payment: dict) -> dict:
    return state_snapshot(booking["status"], booking["stay_status"], payment["status"])


def conflict(message: str, code: str, booking: dict, payment: dict) -> ConflictError:
    return ConflictError(message, code=code, current_state=current_state(booking, payment))


def lock_booking(cur, booking_id: str) -> tuple[dict, dict]:
    """Lock a booking and its payment, booking first.

    Raises:
        NotFoundError: If either row is missing.
    """
    booking = get_booking(cur, booking_id, for_update=True)
    if booking is None:
        raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
    payment = get_payment_by_booking(cur, booking_id, for_update=True)
    if payment is None:
        raise NotFoundError(f"payment for booking {booking_id} not found", code="payment_not_found")
    return booking, payment


def apply_transition(
    cur,
    booking: dict,
    payment: dict,
    *,
    status=_KEEP,
    stay_status=_KEEP,
    payment_status=_KEEP,
    booking_fields: dict | None = None,
    payment_fields: dict | None = None,
) -> None:
    """Write a state change after checking the target against LEGAL_STATES.

    The passed dicts are updated in place so later steps of the same
    transaction see the new state.
    """
    target_status = booking["status"] if status is _KEEP else status
    target_stay = booking["stay_status"] if stay_status is _KEEP else stay_status
    target_payment = payment["status"] if payment_status is _KEEP else payment_status
    assert_legal_state(target_status, target_stay, target_payment)

    fields = dict(booking_fields or {})
    if status is not _KEEP:
        fields["status"] = BookingStatus(status).value
    if stay_status is not _KEEP:
        fields["stay_status"] = StayStatus(stay_status).value if stay_status else None
    if fields:
        update_booking(cur, booking["id"], **fields)
        booking.update(fields)

    pfields = dict(payment_fields or {})
    if payment_status is not _KEEP:
        pfields["status"] = PaymentStatus(payment_status).value
    if pfields:
        update_payment(cur, payment["id"], **pfields)
        payment.update(pfields)


def create_payout_transfer(cur, booking: dict, payment: dict, entry: dict) -> str | None:
    """Create the PENDING settlement transfer for an outbound ledger entry.

    Only escrow -> customer (refund against the original charge) and
    escrow -> realtor wallet (bank transfer) leave the platform.
    """
    event_type = EscrowEventType(entry["event_type"])
    if entry["from_party"] != LedgerParty.ESCROW.value:
        return None

    if entry["to_party"] == LedgerParty.CUSTOMER.value:
        kind, recipient_code = "refund", None
    elif entry["to_party"] == LedgerParty.REALTOR_WALLET.value:
        realtor = get_realtor(cur, booking["realtor_id"])
        kind = "transfer"
        recipient_code = realtor["transfer_recipient_code"] if realtor else None
    else:
        return None

    prefix = _PAYOUT_PREFIXES.get(event_type, event_type.value.lower())
    return insert_transfer(
        cur,
        escrow_event_id=entry["id"],
        booking_id=booking["id"],
        event_type=event_type.value,
        kind=kind,
        amount_kobo=entry["amount_kobo"],
        currency=entry["currency"],
        recipient_party=entry["to_party"],
        recipient_code=recipient_code,
        charge_reference=payment["reference"],
        base_reference=f"{prefix}_{booking['id']}_e{entry['id']}",
    )


def move_funds(
    cur,
    booking: dict,
    payment: dict,
    event_type: EscrowEventType,
    amount_kobo: int,
    from_party: LedgerParty,
    to_party: LedgerParty,
    *,
    actor: Actor,
    notes: str | None = None,
    provider_response: dict | None = None,
    transfer_ids: list[str] | None = None,
) -> dict | None:
    """Record one movement (skipped when zero) and schedule its payout if any."""
    if amount_kobo <= 0:
        return None
    entry = record(
        cur,
        booking_id=booking["id"],
        event_type=event_type,
        amount_kobo=amount_kobo,
        from_party=from_party,
        to_party=to_party,
        currency=booking["currency"],
        reference=payment["reference"],
        notes=notes,
        triggered_by=actor.ledger_label,
        provider_response=provider_response,
    )
    transfer_id = create_payout_transfer(cur, booking, payment, entry)
    if transfer_id is not None and transfer_ids is not None:
        transfer_ids.append(transfer_id)
    return entry


def emit_booking_event(
    cur,
    booking: dict,
    event_type: str,
    *,
    payload: dict | None = None,
    priority: str = PRIORITY_NORMAL,
    correlation_id: str | None = None,
) -> None:
    body = {
        "booking_id": booking["id"],
        "property_id": booking["property_id"],
        "status": booking["status"],
    }
    body.update(payload or {})
    emit_event(
        cur,
        event_type=event_type,
        aggregate_type="booking",
        aggregate_id=booking["id"],
        payload=body,
        priority=priority,
        correlation_id=correlation_id,
    )


def _is_guest(booking: dict, actor: Actor) -> bool:
    return actor.role == ROLE_GUEST and booking.get("guest_id") is not None and str(booking["guest_id"]) == actor.id


def _is_realtor(cur, booking: dict, actor: Actor) -> bool:
    if actor.role != ROLE_REALTOR:
        return False
    realtor = get_realtor(cur, booking["realtor_id"])
    return realtor is not None and realtor["user_id"] == actor.id


def _require_guest(booking: dict, actor: Actor, action: str) -> None:
    if not _is_guest(booking, actor):
        raise AuthorizationError(f"only the booking's guest may {action}", code="not_booking_guest")


def _require_admin(actor: Actor) -> None:
    if actor.role != ROLE_ADMIN:
        raise AuthorizationError("admin role required", code="admin_required")


def _config(cur, config: FinanceConfig | None) -> FinanceConfig:
    return config if config is not None else load_finance_config(cur)


# ---------------------------------------------------------------------------
# Quote and booking creation
# ---------------------------------------------------------------------------


def _validate_dates(check_in_date: date, check_out_date: date, today: date) -> int:
    nights = (check_out_date - check_in_date).days
    if nights <= 0:
        raise ValidationError("check-out must be after check-in", code="invalid_dates")
    if check_in_date < today:
        raise ValidationError("check-in date is in the past", code="invalid_dates")
    return nights


def _load_property(cur, property_id: str) -> dict:
    prop = get_property(cur, property_id)
    if prop is None:
        raise NotFoundError(f"property {property_id} not found", code="property_not_found")
    if not prop["is_active"]:
        raise ValidationError("property is not accepting bookings", code="property_inactive")
    return prop


def _quote_for(
    cur,
    prop: dict,
    nights: int,
    processing_mode: str,
    now: datetime,
    config: FinanceConfig,
) -> Quote:
    start, end = month_bounds(now, prop["realtor_timezone"])
    volume = realtor_confirmed_volume(cur, realtor_id=prop["realtor_id"], start=start, end=end)
    return calculate_quote(
        price_per_night_kobo=prop["price_per_night_kobo"],
        nights=nights,
        cleaning_fee_kobo=prop["cleaning_fee_kobo"],
        security_deposit_kobo=prop["security_deposit_kobo"],
        monthly_volume_kobo=volume,
        processing_mode=processing_mode,
        config=config,
    )


def quote_stay(
    *,
    property_id: str,
    check_in_date: date,
    check_out_date: date,
    processing_mode: str = "local",
    now: datetime | None = None,
    config: FinanceConfig | None = None,
) -> Quote:
    """Live quote for a prospective stay (read only)."""
    now = now or utc_now()
    with txn() as cur:
        prop = _load_property(cur, property_id)
        nights = _validate_dates(check_in_date, check_out_date, now.date())
        return _quote_for(cur, prop, nights, processing_mode, now, _config(cur, config))


def create_booking(
    *,
    property_id: str,
    guest: Actor,
    check_in_date: date,
    check_out_date: date,
    processing_mode: str = "local",
    now: datetime | None = None,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Create a PENDING booking with its quote and commission snapshot frozen.

    Returns:
        {"status": "PENDING", "booking_id", "payment_reference", "quote"}

    Raises:
        AuthorizationError: Actor is not a guest.
        ValidationError: Bad dates or inactive property.
        ConflictError: The dates overlap a live booking.
    """
    if guest.role != ROLE_GUEST:
        raise AuthorizationError("only guests can book", code="guest_required")
    now = now or utc_now()

    with txn() as cur:
        prop = _load_property(cur, property_id)
        nights = _validate_dates(check_in_date, check_out_date, now.date())
        if has_overlapping_booking(
            cur,
            property_id=property_id,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
        ):
            raise ConflictError("dates are not available", code="dates_unavailable")

        cfg = _config(cur, config)
        quote = _quote_for(cur, prop, nights, processing_mode, now, cfg)
        assert_legal_state(_B.PENDING, None, _P.INITIATED)

        booking_id = insert_booking(
            cur,
            property_id=property_id,
            realtor_id=prop["realtor_id"],
            guest_id=guest.id,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            check_in_at=local_instant(check_in_date, prop["check_in_time"], prop["timezone"]),
            check_out_at=local_instant(check_out_date, prop["check_out_time"], prop["timezone"]),
            nights=nights,
            currency=quote.currency,
            status=_B.PENDING.value,
            stay_status=None,
            is_blocked_dates=False,
            room_fee_kobo=quote.room_fee_kobo,
            cleaning_fee_kobo=quote.cleaning_fee_kobo,
            security_deposit_kobo=quote.security_deposit_kobo,
            service_fee_kobo=quote.service_fee_kobo,
            service_fee_stayza_kobo=quote.service_fee.stayza_kobo,
            service_fee_processing_kobo=quote.service_fee.processing_kobo,
            processing_mode=processing_mode,
            platform_fee_kobo=quote.platform_fee_kobo,
            total_price_kobo=quote.total_payable_kobo,
            commission_base_rate=quote.commission.base_rate,
            commission_volume_reduction_rate=quote.commission.volume_reduction_rate,
            commission_effective_rate=quote.commission.effective_rate,
            monthly_volume_kobo=quote.commission.monthly_volume_kobo,
            realtor_payout_kobo=quote.commission.realtor_payout_kobo,
        )
        reference = f"stz_{uuid.uuid4().hex}"
        insert_payment(
            cur,
            booking_id=booking_id,
            amount_kobo=quote.total_payable_kobo,
            currency=quote.currency,
            status=_P.INITIATED.value,
            reference=reference,
        )

    logger.info(
        "booking created",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                property_id=property_id,
                total_price_kobo=quote.total_payable_kobo,
            )
        },
    )
    return {
        "status": _B.PENDING.value,
        "booking_id": booking_id,
        "payment_reference": reference,
        "quote": quote.to_dict(),
    }


def create_blocked_dates_booking(
    *,
    property_id: str,
    actor: Actor,
    check_in_date: date,
    check_out_date: date,
    reason: str | None = None,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Reserve calendar dates without payment: zero-value, immediately ACTIVE."""
    now = now or utc_now()
    with txn() as cur:
        prop = get_property(cur, property_id)
        if prop is None:
            raise NotFoundError(f"property {property_id} not found", code="property_not_found")
        if actor.role != ROLE_ADMIN and not (
            actor.role == ROLE_REALTOR and prop["realtor_user_id"] == actor.id
        ):
            raise AuthorizationError("only admins or the property's realtor may block dates")

        nights = _validate_dates(check_in_date, check_out_date, now.date())
        if has_overlapping_booking(
            cur,
            property_id=property_id,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
        ):
            raise ConflictError("dates are not available", code="dates_unavailable")

        assert_legal_state(_B.ACTIVE, None, _P.SETTLED)
        booking_id = insert_booking(
            cur,
            property_id=property_id,
            realtor_id=prop["realtor_id"],
            guest_id=None,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            check_in_at=local_instant(check_in_date, prop["check_in_time"], prop["timezone"]),
            check_out_at=local_instant(check_out_date, prop["check_out_time"], prop["timezone"]),
            nights=nights,
            currency=prop["currency"],
            status=_B.ACTIVE.value,
            stay_status=None,
            is_blocked_dates=True,
            room_fee_kobo=0,
            cleaning_fee_kobo=0,
            security_deposit_kobo=0,
            service_fee_kobo=0,
            service_fee_stayza_kobo=0,
            service_fee_processing_kobo=0,
            processing_mode="none",
            platform_fee_kobo=0,
            total_price_kobo=0,
            commission_base_rate=Decimal("0"),
            commission_volume_reduction_rate=Decimal("0"),
            commission_effective_rate=Decimal("0"),
            monthly_volume_kobo=0,
            realtor_payout_kobo=0,
            notes=reason,
        )
        insert_payment(
            cur,
            booking_id=booking_id,
            amount_kobo=0,
            currency=prop["currency"],
            status=_P.SETTLED.value,
            reference=f"blocked_{uuid.uuid4().hex}",
            paid_at=now,
        )

    logger.info(
        "blocked dates created",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                property_id=property_id,
                actor_role=actor.role,
            )
        },
    )
    return {"status": _B.ACTIVE.value, "booking_id": booking_id, "is_blocked_dates": True}


def cancel_blocked_dates_booking(
    booking_id: str,
    *,
    actor: Actor,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> dict:
    now = now or utc_now()
    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        if not booking["is_blocked_dates"]:
            raise ValidationError("not a blocked-dates booking", code="not_blocked_dates")
        if actor.role != ROLE_ADMIN and not _is_realtor(cur, booking, actor):
            raise AuthorizationError("only admins or the property's realtor may unblock dates")
        if booking["status"] == _B.CANCELLED.value:
            return {"status": "already_cancelled"}
        if booking["status"] != _B.ACTIVE.value:
            raise conflict("blocked dates already elapsed", "not_cancellable", booking, payment)

        apply_transition(
            cur,
            booking,
            payment,
            status=_B.CANCELLED,
            booking_fields={"cancelled_at": now, "cancelled_by": actor.ledger_label},
        )
    return {"status": "cancelled", "booking_id": booking_id}


# ---------------------------------------------------------------------------
# Stay transitions
# ---------------------------------------------------------------------------


def confirm_checkin(
    booking_id: str,
    *,
    actor: Actor,
    now: datetime | None = None,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Mark the guest as checked in and open the guest dispute window.

    Guests may confirm any time once ACTIVE; realtors only from the local
    check-in time; the system fallback only after the configured delay.
    """
    now = now or utc_now()
    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        cfg = _config(cur, config)

        if _is_guest(booking, actor):
            confirmation = CheckinConfirmation.GUEST_CONFIRMED
        elif _is_realtor(cur, booking, actor):
            confirmation = CheckinConfirmation.REALTOR_CONFIRMED
        elif actor.role == ROLE_SYSTEM:
            confirmation = CheckinConfirmation.AUTO_FALLBACK
        else:
            raise AuthorizationError(
                "only the guest or the property's realtor may confirm check-in",
                code="not_booking_party",
            )

        if booking["is_blocked_dates"]:
            raise conflict("blocked dates have no stay", "blocked_dates", booking, payment)
        if booking["status"] != _B.ACTIVE.value:
            raise conflict("booking is not active", "not_active", booking, payment)
        if booking["stay_status"] is not None:
            raise conflict("guest already checked in", "already_checked_in", booking, payment)
        if confirmation == CheckinConfirmation.REALTOR_CONFIRMED and now < booking["check_in_at"]:
            raise conflict("check-in time has not arrived", "before_checkin_time", booking, payment)
        if (
            confirmation == CheckinConfirmation.AUTO_FALLBACK
            and now < booking["check_in_at"] + cfg.auto_checkin_delay
        ):
            raise conflict("auto check-in not yet due", "before_checkin_time", booking, payment)

        apply_transition(
            cur,
            booking,
            payment,
            stay_status=StayStatus.CHECKED_IN,
            booking_fields={
                "checkin_confirmed_at": now,
                "checkin_confirmation_type": confirmation.value,
                "guest_dispute_closes_at": now + cfg.guest_dispute_window,
                "guest_dispute_opened": False,
            },
        )
        emit_booking_event(
            cur,
            booking,
            "CHECKIN_CONFIRMED",
            payload={"confirmation": confirmation.value},
            correlation_id=correlation_id,
        )

    logger.info(
        "check-in confirmed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                confirmation=confirmation.value,
            )
        },
    )
    return {
        "status": "checked_in",
        "booking_id": booking_id,
        "confirmation": confirmation.value,
        "guest_dispute_window": guest_window(booking, now).to_dict(),
    }


def confirm_checkout(
    booking_id: str,
    *,
    actor: Actor,
    now: datetime | None = None,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Check the guest out and open the realtor dispute window.

    Only the guest checks out; the system checks out stays still open at
    the scheduled check-out time.
    """
    now = now or utc_now()
    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        cfg = _config(cur, config)

        if actor.role == ROLE_SYSTEM:
            if now < booking["check_out_at"]:
                raise conflict("check-out time has not arrived", "before_checkout_time", booking, payment)
        else:
            _require_guest(booking, actor, "check out")

        if booking["checked_out_at"] is not None:
            raise conflict("guest already checked out", "already_checked_out", booking, payment)
        if booking["status"] != _B.ACTIVE.value or booking["stay_status"] != StayStatus.CHECKED_IN.value:
            raise conflict("guest is not checked in", "not_checked_in", booking, payment)

        apply_transition(
            cur,
            booking,
            payment,
            stay_status=StayStatus.CHECKED_OUT,
            booking_fields={
                "checked_out_at": now,
                "realtor_dispute_closes_at": now + cfg.realtor_dispute_window,
                "realtor_dispute_opened": False,
            },
        )
        emit_booking_event(cur, booking, "CHECKOUT_CONFIRMED", correlation_id=correlation_id)

    logger.info(
        "checkout confirmed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                actor_role=actor.role,
            )
        },
    )
    return {
        "status": "checked_out",
        "booking_id": booking_id,
        "realtor_dispute_window": realtor_window(booking, now).to_dict(),
    }


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def _refund_for(booking: dict, now: datetime, config: FinanceConfig) -> RefundCalculation:
    return calculate_refund(
        room_fee_kobo=booking["room_fee_kobo"],
        cleaning_fee_kobo=booking["cleaning_fee_kobo"],
        security_deposit_kobo=booking["security_deposit_kobo"],
        service_fee_kobo=booking["service_fee_kobo"],
        checkin_at=booking["check_in_at"],
        now=now,
        config=config,
    )


def _cancellation_block(booking: dict) -> str | None:
    """Reason code why the booking cannot be cancelled, ignoring timing."""
    if booking["is_blocked_dates"]:
        return "blocked_dates"
    if booking["status"] in (_B.CANCELLED.value, _B.COMPLETED.value):
        return "terminal_state"
    if booking["status"] == _B.DISPUTED.value:
        return "disputed"
    if booking["stay_status"] is not None:
        return "stay_started"
    return None


def preview_cancellation(
    booking_id: str,
    *,
    actor: Actor,
    now: datetime | None = None,
    config: FinanceConfig | None = None,
) -> dict:
    """Public cancellation preview: {canCancel, tier, hoursUntilCheckIn, ...}."""
    now = now or utc_now()
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        _require_guest(booking, actor, "cancel")
        payment = get_payment_by_booking(cur, booking_id)
        cfg = _config(cur, config)

    calculation = _refund_for(booking, now, cfg)
    preview = calculation.to_preview()

    block = _cancellation_block(booking)
    if block is not None:
        preview["canCancel"] = False
        preview["warning"] = f"Booking cannot be cancelled ({block})."
    elif payment is not None and payment["status"] == _P.INITIATED.value:
        # Nothing was charged yet, so nothing moves
        for bucket in preview["perCategoryAmounts"].values():
            for party in bucket:
                bucket[party] = 0
        preview["totals"] = {"customer": 0, "realtor": 0, "platform": 0}
        preview["canCancel"] = True
        preview["warning"] = "No payment has been taken for this booking."
    return preview


def cancel_booking(
    booking_id: str,
    *,
    actor: Actor,
    reason: str | None = None,
    now: datetime | None = None,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Guest cancellation with tiered refund.

    Returns:
        {"status": "already_cancelled"} on a repeated request, otherwise
        {"status": "cancelled", "booking_id", "refund", "transfer_ids"}.

    Raises:
        AuthorizationError: Actor is not the booking's guest.
        ConflictError: Terminal, disputed, checked in, or past the cutoff.
    """
    now = now or utc_now()
    transfer_ids: list[str] = []

    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        _require_guest(booking, actor, "cancel")

        if booking["status"] == _B.CANCELLED.value:
            return {"status": "already_cancelled", "booking_id": booking_id}
        block = _cancellation_block(booking)
        if block is not None:
            raise conflict(f"booking cannot be cancelled ({block})", "not_cancellable", booking, payment)

        cfg = _config(cur, config)
        cancel_fields = {
            "cancelled_at": now,
            "cancelled_by": actor.ledger_label,
            "cancellation_reason": reason,
        }

        if booking["status"] == _B.PENDING.value:
            apply_transition(cur, booking, payment, status=_B.CANCELLED, booking_fields=cancel_fields)
            emit_booking_event(cur, booking, "BOOKING_CANCELLED", correlation_id=correlation_id)
            refund = None
        else:
            refund = _refund_for(booking, now, cfg)
            if not refund.can_cancel:
                raise conflict("check-in time has passed", "cancellation_cutoff", booking, payment)

            move_funds(
                cur, booking, payment,
                EscrowEventType.REFUND_ROOM_FEE_TO_CUSTOMER,
                refund.customer_room_refund_kobo,
                LedgerParty.ESCROW, LedgerParty.CUSTOMER,
                actor=actor, notes=f"{refund.tier} cancellation refund",
                transfer_ids=transfer_ids,
            )
            move_funds(
                cur, booking, payment,
                EscrowEventType.REFUND_PARTIAL_TO_REALTOR,
                refund.realtor_room_portion_kobo,
                LedgerParty.ESCROW, LedgerParty.REALTOR_WALLET,
                actor=actor, notes=f"{refund.tier} cancellation realtor share",
                transfer_ids=transfer_ids,
            )
            move_funds(
                cur, booking, payment,
                EscrowEventType.CANCELLATION_FEE_TO_PLATFORM,
                refund.platform_room_portion_kobo,
                LedgerParty.ESCROW, LedgerParty.PLATFORM_WALLET,
                actor=actor, notes=f"{refund.tier} cancellation platform share",
            )
            move_funds(
                cur, booking, payment,
                EscrowEventType.RELEASE_DEPOSIT_TO_CUSTOMER,
                refund.security_deposit_refund_kobo,
                LedgerParty.ESCROW, LedgerParty.CUSTOMER,
                actor=actor, notes="security deposit refund on cancellation",
                transfer_ids=transfer_ids,
            )

            apply_transition(
                cur,
                booking,
                payment,
                status=_B.CANCELLED,
                payment_status=_P.SETTLED,
                booking_fields={**cancel_fields, "refund_tier": refund.tier},
                payment_fields={
                    "room_fee_in_escrow": False,
                    "deposit_in_escrow": False,
                    "room_fee_released_at": now,
                    "deposit_released_at": now,
                },
            )
            emit_booking_event(
                cur,
                booking,
                "BOOKING_CANCELLED",
                payload={
                    "tier": refund.tier,
                    "customer_refund_kobo": refund.customer_total_kobo,
                    "realtor_kobo": refund.realtor_total_kobo,
                },
                correlation_id=correlation_id,
            )

    logger.info(
        "booking cancelled",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                tier=refund.tier if refund else None,
                transfers=len(transfer_ids),
            )
        },
    )
    return {
        "status": "cancelled",
        "booking_id": booking_id,
        "refund": refund.to_preview() if refund else None,
        "transfer_ids": transfer_ids,
    }


# ---------------------------------------------------------------------------
# Releases (window expiry)
# ---------------------------------------------------------------------------


def _release_room_fee(cur, booking: dict, payment: dict, actor: Actor, now: datetime, transfer_ids: list[str]) -> None:
    move_funds(
        cur, booking, payment,
        EscrowEventType.RELEASE_ROOM_FEE_SPLIT,
        booking["realtor_payout_kobo"],
        LedgerParty.ESCROW, LedgerParty.REALTOR_WALLET,
        actor=actor, notes="room fee realtor share",
        transfer_ids=transfer_ids,
    )
    move_funds(
        cur, booking, payment,
        EscrowEventType.RELEASE_ROOM_FEE_SPLIT,
        booking["platform_fee_kobo"],
        LedgerParty.ESCROW, LedgerParty.PLATFORM_WALLET,
        actor=actor, notes=f"commission at {booking['commission_effective_rate']}",
    )


def _lock_for_sweep(cur, booking_id: str) -> tuple[dict | None, dict | None]:
    booking = get_booking(cur, booking_id, for_update=True, skip_locked=True)
    if booking is None:
        return None, None
    return booking, get_payment_by_booking(cur, booking_id, for_update=True)


def release_room_fee_split(
    booking_id: str,
    *,
    now: datetime | None = None,
    actor: Actor = SYSTEM_ACTOR,
    correlation_id: str | None = None,
) -> dict:
    """Release the room fee once the guest window expired without a dispute."""
    now = now or utc_now()
    transfer_ids: list[str] = []
    with txn() as cur:
        booking, payment = _lock_for_sweep(cur, booking_id)
        if booking is None or payment is None:
            return {"status": "skipped", "booking_id": booking_id}

        window = guest_window(booking, now)
        if (
            booking["status"] != _B.ACTIVE.value
            or booking["stay_status"] is None
            or not window.expired
            or window.opened
            or not payment["room_fee_in_escrow"]
        ):
            return {"status": "not_eligible", "booking_id": booking_id}

        _release_room_fee(cur, booking, payment, actor, now, transfer_ids)
        apply_transition(
            cur,
            booking,
            payment,
            payment_status=_P.PARTIALLY_RELEASED,
            payment_fields={"room_fee_in_escrow": False, "room_fee_released_at": now},
        )
        emit_booking_event(
            cur,
            booking,
            "PAYOUT_INITIATED",
            payload={"realtor_payout_kobo": booking["realtor_payout_kobo"]},
            correlation_id=correlation_id,
        )

    logger.info(
        "room fee released",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, booking_id=booking_id)},
    )
    return {"status": "released", "booking_id": booking_id, "transfer_ids": transfer_ids}


def release_security_deposit(
    booking_id: str,
    *,
    now: datetime | None = None,
    actor: Actor = SYSTEM_ACTOR,
    correlation_id: str | None = None,
) -> dict:
    """Return the deposit once the realtor window expired; completes the booking.

    A room fee still in escrow (checkout inside the guest window) is
    released first, provided the guest window has itself expired.
    """
    now = now or utc_now()
    transfer_ids: list[str] = []
    with txn() as cur:
        booking, payment = _lock_for_sweep(cur, booking_id)
        if booking is None or payment is None:
            return {"status": "skipped", "booking_id": booking_id}

        window = realtor_window(booking, now)
        if (
            booking["status"] != _B.ACTIVE.value
            or booking["stay_status"] != StayStatus.CHECKED_OUT.value
            or not window.expired
            or window.opened
        ):
            return {"status": "not_eligible", "booking_id": booking_id}

        if payment["room_fee_in_escrow"]:
            if not guest_window(booking, now).expired:
                return {"status": "not_eligible", "booking_id": booking_id}
            _release_room_fee(cur, booking, payment, actor, now, transfer_ids)

        if payment["deposit_in_escrow"]:
            move_funds(
                cur, booking, payment,
                EscrowEventType.RELEASE_DEPOSIT_TO_CUSTOMER,
                booking["security_deposit_kobo"],
                LedgerParty.ESCROW, LedgerParty.CUSTOMER,
                actor=actor, notes="security deposit returned",
                transfer_ids=transfer_ids,
            )

        apply_transition(
            cur,
            booking,
            payment,
            status=_B.COMPLETED,
            stay_status=None,
            payment_status=_P.SETTLED,
            booking_fields={"completed_at": now},
            payment_fields={
                "room_fee_in_escrow": False,
                "deposit_in_escrow": False,
                "deposit_released_at": now,
            },
        )
        emit_booking_event(cur, booking, "BOOKING_COMPLETED", correlation_id=correlation_id)

    logger.info(
        "security deposit released",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, booking_id=booking_id)},
    )
    return {"status": "completed", "booking_id": booking_id, "transfer_ids": transfer_ids}


def complete_blocked_dates_booking(booking_id: str, *, now: datetime | None = None) -> dict:
    now = now or utc_now()
    with txn() as cur:
        booking, payment = _lock_for_sweep(cur, booking_id)
        if booking is None or payment is None:
            return {"status": "skipped", "booking_id": booking_id}
        if (
            not booking["is_blocked_dates"]
            or booking["status"] != _B.ACTIVE.value
            or now < booking["check_out_at"]
        ):
            return {"status": "not_eligible", "booking_id": booking_id}
        apply_transition(cur, booking, payment, status=_B.COMPLETED, booking_fields={"completed_at": now})
    return {"status": "completed", "booking_id": booking_id}


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


def open_guest_dispute(
    booking_id: str,
    *,
    actor: Actor,
    reason: str,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Guest contests the stay while the guest window is open; holds the room fee."""
    now = now or utc_now()
    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        _require_guest(booking, actor, "open a dispute")
        if booking["status"] != _B.ACTIVE.value:
            raise conflict("booking is not active", "not_active", booking, payment)
        if not guest_window(booking, now).can_open or not payment["room_fee_in_escrow"]:
            raise conflict("guest dispute window is closed", "dispute_window_closed", booking, payment)

        apply_transition(
            cur,
            booking,
            payment,
            status=_B.DISPUTED,
            stay_status=None,
            booking_fields={
                "guest_dispute_opened": True,
                "dispute_subject": DisputeSubject.ROOM_FEE.value,
                "dispute_reason": reason,
            },
        )
        emit_booking_event(
            cur, booking, "DISPUTE_OPENED",
            payload={"subject": DisputeSubject.ROOM_FEE.value},
            correlation_id=correlation_id,
        )
    return {"status": "disputed", "booking_id": booking_id, "subject": DisputeSubject.ROOM_FEE.value}


def open_deposit_dispute(
    booking_id: str,
    *,
    actor: Actor,
    claim_kobo: int,
    reason: str,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Realtor claims damages against the deposit while the realtor window is open."""
    now = now or utc_now()
    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        if not _is_realtor(cur, booking, actor):
            raise AuthorizationError(
                "only the property's realtor may claim the deposit", code="not_booking_realtor"
            )
        if claim_kobo <= 0 or claim_kobo > booking["security_deposit_kobo"]:
            raise ValidationError("claim must be positive and within the deposit", code="invalid_amount")
        if booking["status"] != _B.ACTIVE.value or booking["stay_status"] != StayStatus.CHECKED_OUT.value:
            raise conflict("guest has not checked out", "not_checked_out", booking, payment)
        if not realtor_window(booking, now).can_open or not payment["deposit_in_escrow"]:
            raise conflict("realtor dispute window is closed", "dispute_window_closed", booking, payment)

        apply_transition(
            cur,
            booking,
            payment,
            status=_B.DISPUTED,
            stay_status=None,
            booking_fields={
                "realtor_dispute_opened": True,
                "dispute_subject": DisputeSubject.DEPOSIT.value,
                "dispute_claim_kobo": claim_kobo,
                "dispute_reason": reason,
            },
        )
        emit_booking_event(
            cur, booking, "DISPUTE_OPENED",
            payload={"subject": DisputeSubject.DEPOSIT.value, "claim_kobo": claim_kobo},
            correlation_id=correlation_id,
        )
    return {"status": "disputed", "booking_id": booking_id, "subject": DisputeSubject.DEPOSIT.value}


def _restored_stay(booking: dict) -> StayStatus:
    return StayStatus.CHECKED_OUT if booking["checked_out_at"] else StayStatus.CHECKED_IN


def resolve_room_fee_dispute(
    booking_id: str,
    *,
    actor: Actor,
    refund_percent: int,
    notes: str | None = None,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Admin outcome of a guest dispute.

    100% refunds room fee and deposit and cancels the booking. Anything less
    refunds that share and splits the remainder by the frozen commission rate;
    the booking returns to ACTIVE with its stay status restored.
    """
    _require_admin(actor)
    if not 0 <= refund_percent <= 100:
        raise ValidationError("refund_percent must be between 0 and 100", code="invalid_percent")
    now = now or utc_now()
    transfer_ids: list[str] = []

    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        if booking["status"] != _B.DISPUTED.value or booking["dispute_subject"] != DisputeSubject.ROOM_FEE.value:
            raise conflict("no open room fee dispute", "no_open_dispute", booking, payment)

        room_fee = booking["room_fee_kobo"]
        if refund_percent == 100:
            move_funds(
                cur, booking, payment,
                EscrowEventType.REFUND_ROOM_FEE_TO_CUSTOMER, room_fee,
                LedgerParty.ESCROW, LedgerParty.CUSTOMER,
                actor=actor, notes=notes or "dispute upheld: full refund",
                transfer_ids=transfer_ids,
            )
            if payment["deposit_in_escrow"]:
                move_funds(
                    cur, booking, payment,
                    EscrowEventType.RELEASE_DEPOSIT_TO_CUSTOMER, booking["security_deposit_kobo"],
                    LedgerParty.ESCROW, LedgerParty.CUSTOMER,
                    actor=actor, notes="security deposit returned with full refund",
                    transfer_ids=transfer_ids,
                )
            apply_transition(
                cur, booking, payment,
                status=_B.CANCELLED,
                payment_status=_P.SETTLED,
                booking_fields={"cancelled_at": now, "cancelled_by": actor.ledger_label},
                payment_fields={
                    "room_fee_in_escrow": False,
                    "deposit_in_escrow": False,
                    "room_fee_released_at": now,
                    "deposit_released_at": now,
                },
            )
            outcome = "refunded"
        else:
            refund = round_kobo(Decimal(room_fee) * Decimal(refund_percent) / Decimal(100))
            remainder = room_fee - refund
            platform = round_kobo(Decimal(remainder) * Decimal(booking["commission_effective_rate"]))
            move_funds(
                cur, booking, payment,
                EscrowEventType.REFUND_PARTIAL_TO_CUSTOMER, refund,
                LedgerParty.ESCROW, LedgerParty.CUSTOMER,
                actor=actor, notes=notes or f"dispute partial refund {refund_percent}%",
                transfer_ids=transfer_ids,
            )
            move_funds(
                cur, booking, payment,
                EscrowEventType.RELEASE_ROOM_FEE_SPLIT, remainder - platform,
                LedgerParty.ESCROW, LedgerParty.REALTOR_WALLET,
                actor=actor, notes="room fee realtor share after dispute",
                transfer_ids=transfer_ids,
            )
            move_funds(
                cur, booking, payment,
                EscrowEventType.RELEASE_ROOM_FEE_SPLIT, platform,
                LedgerParty.ESCROW, LedgerParty.PLATFORM_WALLET,
                actor=actor, notes="commission after dispute",
            )
            apply_transition(
                cur, booking, payment,
                status=_B.ACTIVE,
                stay_status=_restored_stay(booking),
                payment_status=_P.PARTIALLY_RELEASED,
                payment_fields={"room_fee_in_escrow": False, "room_fee_released_at": now},
            )
            outcome = "partial" if refund else "rejected"

        emit_booking_event(
            cur, booking, "DISPUTE_RESOLVED",
            payload={"subject": DisputeSubject.ROOM_FEE.value, "refund_percent": refund_percent},
            correlation_id=correlation_id,
        )

    logger.info(
        "room fee dispute resolved",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                outcome=outcome,
            )
        },
    )
    return {"status": outcome, "booking_id": booking_id, "transfer_ids": transfer_ids}


def resolve_deposit_dispute(
    booking_id: str,
    *,
    actor: Actor,
    approved_kobo: int,
    notes: str | None = None,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Admin outcome of a realtor damage claim; completes the booking."""
    _require_admin(actor)
    now = now or utc_now()
    transfer_ids: list[str] = []

    with txn() as cur:
        booking, payment = lock_booking(cur, booking_id)
        if booking["status"] != _B.DISPUTED.value or booking["dispute_subject"] != DisputeSubject.DEPOSIT.value:
            raise conflict("no open deposit dispute", "no_open_dispute", booking, payment)
        deposit = booking["security_deposit_kobo"]
        if not 0 <= approved_kobo <= deposit:
            raise ValidationError("approved amount must be within the deposit", code="invalid_amount")

        if payment["room_fee_in_escrow"]:
            _release_room_fee(cur, booking, payment, actor, now, transfer_ids)

        move_funds(
            cur, booking, payment,
            EscrowEventType.PAY_REALTOR_FROM_DEPOSIT, approved_kobo,
            LedgerParty.ESCROW, LedgerParty.REALTOR_WALLET,
            actor=actor, notes=notes or "damage claim approved",
            transfer_ids=transfer_ids,
        )
        move_funds(
            cur, booking, payment,
            EscrowEventType.RELEASE_DEPOSIT_TO_CUSTOMER, deposit - approved_kobo,
            LedgerParty.ESCROW, LedgerParty.CUSTOMER,
            actor=actor, notes="remaining deposit returned",
            transfer_ids=transfer_ids,
        )
        apply_transition(
            cur, booking, payment,
            status=_B.COMPLETED,
            payment_status=_P.SETTLED,
            booking_fields={"completed_at": now},
            payment_fields={
                "room_fee_in_escrow": False,
                "deposit_in_escrow": False,
                "deposit_released_at": now,
            },
        )
        emit_booking_event(
            cur, booking, "DISPUTE_RESOLVED",
            payload={"subject": DisputeSubject.DEPOSIT.value, "approved_kobo": approved_kobo},
            correlation_id=correlation_id,
        )
        emit_booking_event(cur, booking, "BOOKING_COMPLETED", correlation_id=correlation_id)

    return {"status": "completed", "booking_id": booking_id, "transfer_ids": transfer_ids}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def _authorize_viewer(cur, booking: dict, actor: Actor) -> None:
    if actor.role == ROLE_ADMIN or _is_guest(booking, actor) or _is_realtor(cur, booking, actor):
        return
    raise AuthorizationError("not a party to this booking", code="not_booking_party")


def get_booking_view(booking_id: str, *, actor: Actor, now: datetime | None = None) -> dict:
    now = now or utc_now()
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        _authorize_viewer(cur, booking, actor)
        payment = get_payment_by_booking(cur, booking_id)

    view = {key: value for key, value in booking.items() if key != "notes"}
    view["payment"] = {
        "status": payment["status"],
        "amount_kobo": payment["amount_kobo"],
        "reference": payment["reference"],
        "paid_at": payment["paid_at"],
        "room_fee_in_escrow": payment["room_fee_in_escrow"],
        "deposit_in_escrow": payment["deposit_in_escrow"],
    } if payment else None
    view["dispute_windows"] = windows_for(booking, now)
    return view


def get_dispute_windows(booking_id: str, *, actor: Actor, now: datetime | None = None) -> dict:
    now = now or utc_now()
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        _authorize_viewer(cur, booking, actor)
    return windows_for(booking, now)


def get_escrow_timeline(booking_id: str, *, actor: Actor) -> list[dict]:
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        _authorize_viewer(cur, booking, actor)
        return list_timeline(cur, booking_id)
