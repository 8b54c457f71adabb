"""Gateway-facing settlement: webhook handling and outbound transfers.

Webhook flow (process_webhook):
1. Skip (and audit as DUPLICATE) when the event id is already PROCESSED.
2. For a critical transfer failure, verify with the gateway first, outside
   any transaction and with a bounded timeout.
3. Run the handler and insert the PROCESSED marker in one transaction.
   Losing the marker race rolls the handler back.
4. Any other error is audited as FAILED in a separate transaction and
   re-raised so the gateway redelivers.
5. After commit, dispatch transfers the handler scheduled.

Transfers are always sent to the gateway after the transaction that created
or re-referenced them has committed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from stayza.domain.actors import WEBHOOK_ACTOR, Actor
from stayza.domain.errors import (
    ConflictError,
    ExternalGatewayError,
    GatewayTimeoutError,
    NotFoundError,
)
from stayza.domain.lifecycle import apply_transition, emit_booking_event, lock_booking, move_funds
from stayza.domain.states import (
    CRITICAL_EVENT_TYPES,
    FINALIZED_PAYMENT_STATUSES,
    BookingStatus,
    EscrowEventType,
    LedgerParty,
    PaymentStatus,
)
from stayza.domain.transfers import (
    IN_FLIGHT_STATUSES,
    FailureAction,
    TransferStatus,
    assert_transition,
    decide_after_failure,
)
from stayza.infra.db import txn
from stayza.infra.finance_settings import FinanceConfig, load_finance_config
from stayza.infra.repositories.outbox_repository import PRIORITY_NORMAL, PRIORITY_URGENT, emit_event
from stayza.infra.repositories.payments_repository import (
    get_payment_by_booking,
    get_payment_by_reference,
    update_payment,
)
from stayza.infra.repositories.transfers_repository import (
    get_transfer,
    get_transfer_by_reference,
    list_transfers,
    list_uncertain_refunds,
    list_undispatched,
    update_transfer,
)
from stayza.infra.repositories.webhook_events_repository import (
    DUPLICATE,
    FAILED,
    build_event_id,
    is_processed,
    mark_processed,
    record_event,
)
from stayza.infra.time import utc_now
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context
from stayza.paystack.webhook import PROVIDER, event_reference

logger = get_logger(__name__)

RECONCILE_TASK_PATH = "/tasks/settlement/reconcile-transfer"

VERIFIED_SUCCESS = "success"
VERIFIED_UNKNOWN = "unknown"
VERIFICATION_DEFERRED = "deferred"

# Transfer metadata flag: refund sent, gateway outcome not yet known
DISPATCH_UNCERTAIN = "dispatch_uncertain"
# Minimum age of an uncertain refund before it is looked up
REFUND_LOOKUP_GRACE = timedelta(minutes=10)

_TRANSFER_FAILURE_EVENTS = frozenset({"transfer.failed", "transfer.reversed"})

# Keys dropped from stored webhook payloads (customer PII)
_AUDIT_DROP_KEYS = ("customer", "authorization", "metadata")


class _ConcurrentDelivery(Exception):
    """Another delivery committed the PROCESSED marker first."""


def _is_critical(transfer: dict) -> bool:
    return EscrowEventType(transfer["event_type"]) in CRITICAL_EVENT_TYPES


def _pays_realtor(transfer: dict) -> bool:
    return transfer["recipient_party"] == LedgerParty.REALTOR_WALLET.value


def _gateway_summary(data: dict[str, Any] | None) -> dict[str, Any]:
    data = data or {}
    keys = ("id", "status", "reference", "transfer_code", "amount", "gateway_response", "reason")
    return {key: data[key] for key in keys if key in data}


def _audit_payload(body: dict[str, Any]) -> dict[str, Any]:
    data = body.get("data")
    if not isinstance(data, dict):
        return dict(body)
    return {**body, "data": {k: v for k, v in data.items() if k not in _AUDIT_DROP_KEYS}}


def _emit_transfer_event(
    cur,
    transfer: dict,
    event_type: str,
    *,
    priority: str,
    reference: str,
    attempt: int,
    error: str | None,
    correlation_id: str | None,
    **extra: Any,
) -> None:
    emit_event(
        cur,
        event_type=event_type,
        aggregate_type="settlement_transfer",
        aggregate_id=transfer["id"],
        payload={
            "booking_id": transfer["booking_id"],
            "event_type": transfer["event_type"],
            "amount_kobo": transfer["amount_kobo"],
            "attempt": attempt,
            "reference": reference,
            "error": error,
            **extra,
        },
        priority=priority,
        correlation_id=correlation_id,
    )


# ---------------------------------------------------------------------------
# Charge events
# ---------------------------------------------------------------------------


def handle_charge_success(cur, event, *, correlation_id: str | None = None) -> dict:
    """Move the booking to ACTIVE and put room fee and deposit in escrow."""
    reference = event.data.reference
    found = get_payment_by_reference(cur, reference)
    if found is None:
        logger.warning(
            "charge for unknown reference",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, reference=reference)},
        )
        return {"status": "unknown_reference"}

    booking, payment = lock_booking(cur, found["booking_id"])

    if payment["status"] in {s.value for s in FINALIZED_PAYMENT_STATUSES}:
        return {"status": "already_finalized", "booking_id": booking["id"]}

    if booking["status"] == BookingStatus.CANCELLED.value:
        # Money arrived for a booking that no longer exists; operator must refund
        emit_event(
            cur,
            event_type="ORPHAN_PAYMENT",
            aggregate_type="payment",
            aggregate_id=payment["id"],
            payload={
                "booking_id": booking["id"],
                "reference": reference,
                "amount_kobo": event.data.amount,
            },
            priority=PRIORITY_URGENT,
            correlation_id=correlation_id,
        )
        logger.error(
            "payment received for cancelled booking",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, booking_id=booking["id"])},
        )
        return {"status": "orphan_payment", "booking_id": booking["id"]}

    if event.data.amount != payment["amount_kobo"]:
        emit_event(
            cur,
            event_type="PAYMENT_AMOUNT_MISMATCH",
            aggregate_type="payment",
            aggregate_id=payment["id"],
            payload={
                "booking_id": booking["id"],
                "reference": reference,
                "expected_kobo": payment["amount_kobo"],
                "received_kobo": event.data.amount,
            },
            priority=PRIORITY_URGENT,
            correlation_id=correlation_id,
        )
        logger.error(
            "charge amount mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, booking_id=booking["id"])},
        )
        return {"status": "amount_mismatch", "booking_id": booking["id"]}

    provider_response = _gateway_summary(event.data.model_dump())
    for event_type, amount, to_party in (
        (EscrowEventType.HOLD_ROOM_FEE, booking["room_fee_kobo"], LedgerParty.ESCROW),
        (EscrowEventType.HOLD_SECURITY_DEPOSIT, booking["security_deposit_kobo"], LedgerParty.ESCROW),
        (EscrowEventType.RELEASE_CLEANING_FEE, booking["cleaning_fee_kobo"], LedgerParty.REALTOR_WALLET),
        (EscrowEventType.COLLECT_SERVICE_FEE, booking["service_fee_kobo"], LedgerParty.PLATFORM_WALLET),
    ):
        move_funds(
            cur, booking, payment, event_type, amount,
            LedgerParty.CUSTOMER, to_party,
            actor=WEBHOOK_ACTOR,
            provider_response=provider_response,
        )

    now = utc_now()
    apply_transition(
        cur,
        booking,
        payment,
        status=BookingStatus.ACTIVE,
        payment_status=PaymentStatus.HELD,
        payment_fields={
            "paid_at": now,
            "provider_transaction_id": str(event.data.id) if event.data.id is not None else None,
            "room_fee_in_escrow": booking["room_fee_kobo"] > 0,
            "deposit_in_escrow": booking["security_deposit_kobo"] > 0,
        },
    )
    emit_booking_event(
        cur,
        booking,
        "BOOKING_CONFIRMED",
        payload={"total_price_kobo": booking["total_price_kobo"]},
        correlation_id=correlation_id,
    )
    return {"status": "confirmed", "booking_id": booking["id"]}


def handle_charge_failed(cur, event, *, correlation_id: str | None = None) -> dict:
    found = get_payment_by_reference(cur, event.data.reference)
    if found is None:
        return {"status": "unknown_reference"}

    booking, payment = lock_booking(cur, found["booking_id"])
    if payment["status"] in {s.value for s in FINALIZED_PAYMENT_STATUSES}:
        return {"status": "ignored_finalized", "booking_id": booking["id"]}
    if payment["status"] == PaymentStatus.FAILED.value:
        return {"status": "already_failed", "booking_id": booking["id"]}

    fields = {}
    if booking["status"] == BookingStatus.PENDING.value:
        fields = {
            "cancelled_at": utc_now(),
            "cancelled_by": WEBHOOK_ACTOR.ledger_label,
            "cancellation_reason": "payment_failed",
        }
    apply_transition(
        cur,
        booking,
        payment,
        status=BookingStatus.CANCELLED,
        payment_status=PaymentStatus.FAILED,
        booking_fields=fields,
        payment_fields={"metadata": {"failure": event.data.gateway_response or event.data.message}},
    )
    if fields:
        emit_booking_event(
            cur, booking, "BOOKING_CANCELLED",
            payload={"reason": "payment_failed"},
            correlation_id=correlation_id,
        )
    return {"status": "payment_failed", "booking_id": booking["id"]}


# ---------------------------------------------------------------------------
# Transfer outcomes
# ---------------------------------------------------------------------------


def _confirm_transfer(
    cur,
    transfer: dict,
    *,
    provider_response: dict | None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> None:
    now = now or utc_now()
    assert_transition(transfer["status"], TransferStatus.CONFIRMED)
    fields: dict[str, Any] = {
        "status": TransferStatus.CONFIRMED.value,
        "confirmed_at": now,
        "provider_response": provider_response or {},
    }
    if metadata:
        fields["metadata"] = metadata
    update_transfer(cur, transfer["id"], **fields)

    if _pays_realtor(transfer):
        payment = get_payment_by_booking(cur, transfer["booking_id"], for_update=True)
        if payment is not None:
            update_payment(
                cur,
                payment["id"],
                realtor_transfer_completed_at=now,
                realtor_transfer_failed=False,
            )


def handle_transfer_success(cur, event, *, correlation_id: str | None = None) -> dict:
    reference = event.data.reference
    transfer = get_transfer_by_reference(cur, reference, for_update=True)
    if transfer is None:
        logger.warning(
            "transfer success for unknown reference",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, reference=reference)},
        )
        return {"status": "unknown_reference"}
    if transfer["status"] in (TransferStatus.CONFIRMED.value, TransferStatus.RESOLVED.value):
        return {"status": "already_closed", "transfer_id": transfer["id"]}

    if reference != transfer["reference"]:
        logger.warning(
            "success for superseded transfer reference",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    transfer_id=transfer["id"],
                    reference=reference,
                )
            },
        )

    _confirm_transfer(cur, transfer, provider_response=_gateway_summary(event.data.model_dump()))
    return {"status": "confirmed", "transfer_id": transfer["id"]}


def apply_transfer_failure(
    cur,
    transfer: dict,
    *,
    failed_reference: str,
    error: str,
    verification: str | None,
    config: FinanceConfig,
    correlation_id: str | None = None,
) -> dict:
    """Apply a failure report to a locked transfer row.

    Critical movements retry with a fresh reference up to the retry cap,
    then escalate. Non-critical ones fail straight away.
    """
    critical = _is_critical(transfer)
    attempt = transfer["attempts"] + 1
    decision = decide_after_failure(
        transfer,
        failed_reference=failed_reference,
        critical=critical,
        retry_cap=config.transfer_retry_cap,
    )
    result = {"transfer_id": transfer["id"], "booking_id": transfer["booking_id"]}
    log_context = safe_log_context(
        correlationId=correlation_id,
        transfer_id=transfer["id"],
        reference=failed_reference,
        attempts=transfer["attempts"],
    )

    if decision.action == FailureAction.IGNORE:
        logger.info("stale transfer failure ignored", extra={"extra_fields": log_context})
        return {**result, "status": "ignored"}

    if critical and verification == VERIFIED_SUCCESS:
        _confirm_transfer(
            cur,
            transfer,
            provider_response={"reference": failed_reference, "status": "success"},
            metadata={"recovered_via_verification": True, "reported_failure": error},
        )
        _emit_transfer_event(
            cur, transfer, "TRANSFER_RECOVERED",
            priority=PRIORITY_NORMAL,
            reference=failed_reference,
            attempt=attempt,
            error=error,
            correlation_id=correlation_id,
        )
        logger.info("transfer failure recovered by verification", extra={"extra_fields": log_context})
        return {**result, "status": "recovered"}

    if critical and verification == VERIFICATION_DEFERRED:
        update_transfer(cur, transfer["id"], last_error=error, metadata={"verification_deferred": True})
        _emit_transfer_event(
            cur, transfer, "TRANSFER_FAILED",
            priority=PRIORITY_URGENT,
            reference=failed_reference,
            attempt=attempt,
            error=error,
            correlation_id=correlation_id,
            verification=VERIFICATION_DEFERRED,
        )
        return {**result, "status": "verification_deferred", "reference": failed_reference}

    now = utc_now()
    if decision.action == FailureAction.RETRY:
        update_transfer(
            cur,
            transfer["id"],
            status=decision.next_status.value,
            attempts=decision.next_attempt,
            reference=decision.next_reference,
            dispatched_at=None,
            last_error=error,
            metadata={f"attempt_{decision.next_attempt}_after": error},
        )
        _emit_transfer_event(
            cur, transfer, "TRANSFER_FAILED",
            priority=PRIORITY_URGENT,
            reference=failed_reference,
            attempt=attempt,
            error=error,
            correlation_id=correlation_id,
            next_reference=decision.next_reference,
        )
        logger.warning("transfer failed, retrying", extra={"extra_fields": log_context})
        return {
            **result,
            "status": "retry_scheduled",
            "reference": decision.next_reference,
            "dispatch_transfer_ids": [transfer["id"]],
        }

    if decision.action == FailureAction.ESCALATE:
        update_transfer(
            cur,
            transfer["id"],
            status=TransferStatus.ESCALATED.value,
            escalated_at=now,
            last_error=error,
        )
        event_type, priority, status = "TRANSFER_ESCALATED", PRIORITY_URGENT, "escalated"
        logger.error("transfer escalated after retries", extra={"extra_fields": log_context})
    else:
        update_transfer(cur, transfer["id"], status=TransferStatus.FAILED.value, last_error=error)
        event_type, priority, status = "TRANSFER_FAILED", PRIORITY_NORMAL, "failed"
        logger.warning("transfer failed", extra={"extra_fields": log_context})

    _emit_transfer_event(
        cur, transfer, event_type,
        priority=priority,
        reference=failed_reference,
        attempt=attempt,
        error=error,
        correlation_id=correlation_id,
    )
    if _pays_realtor(transfer):
        payment = get_payment_by_booking(cur, transfer["booking_id"], for_update=True)
        if payment is not None:
            update_payment(cur, payment["id"], realtor_transfer_failed=True)
    return {**result, "status": status}


def handle_transfer_failure(
    cur,
    event,
    *,
    verification: str | None,
    config: FinanceConfig,
    correlation_id: str | None = None,
) -> dict:
    reference = event.data.reference
    transfer = get_transfer_by_reference(cur, reference, for_update=True)
    if transfer is None:
        logger.warning(
            "transfer failure for unknown reference",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, reference=reference)},
        )
        return {"status": "unknown_reference"}
    error = f"{event.event}: {event.data.reason or event.data.message or 'no reason given'}"
    return apply_transfer_failure(
        cur,
        transfer,
        failed_reference=reference,
        error=error,
        verification=verification,
        config=config,
        correlation_id=correlation_id,
    )


def verify_transfer_outcome(gateway, reference: str, *, timeout: float) -> str:
    """Ask the gateway whether ``reference`` actually paid out."""
    try:
        data = gateway.verify_transfer(reference, timeout=timeout)
    except GatewayTimeoutError:
        return VERIFICATION_DEFERRED
    except ExternalGatewayError as exc:
        logger.warning(
            "transfer verification failed",
            extra={"extra_fields": safe_log_context(reference=reference, error=str(exc))},
        )
        return VERIFIED_UNKNOWN
    return VERIFIED_SUCCESS if (data or {}).get("status") == "success" else VERIFIED_UNKNOWN


# ---------------------------------------------------------------------------
# Webhook entry point
# ---------------------------------------------------------------------------


def _needs_verification(cur, event_type: str, reference: str) -> bool:
    if event_type not in _TRANSFER_FAILURE_EVENTS:
        return False
    transfer = get_transfer_by_reference(cur, reference)
    return (
        transfer is not None
        and _is_critical(transfer)
        and TransferStatus(transfer["status"]) in IN_FLIGHT_STATUSES
        and transfer["reference"] == reference
    )


def _run_handler(cur, event, *, verification, config, correlation_id) -> dict:
    if event.event == "charge.success":
        return handle_charge_success(cur, event, correlation_id=correlation_id)
    if event.event == "charge.failed":
        return handle_charge_failed(cur, event, correlation_id=correlation_id)
    if event.event == "transfer.success":
        return handle_transfer_success(cur, event, correlation_id=correlation_id)
    if event.event in _TRANSFER_FAILURE_EVENTS:
        return handle_transfer_failure(
            cur, event, verification=verification, config=config, correlation_id=correlation_id
        )
    return {"status": "unhandled"}


def process_webhook(
    event,
    body: dict[str, Any],
    *,
    gateway=None,
    tasks_client=None,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Apply one verified, parsed gateway notification exactly once.

    Returns:
        Handler result dict; ``{"status": "duplicate"}`` for repeats.

    Raises:
        Exception: Whatever the handler raised, after auditing it as FAILED.
    """
    event_type = event.event
    reference = event_reference(event)
    event_id = build_event_id(PROVIDER, event_type, reference)
    audit_payload = _audit_payload(body)
    log_context = safe_log_context(correlationId=correlation_id, event_id=event_id)

    with txn() as cur:
        if is_processed(cur, event_id):
            record_event(
                cur,
                provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                status=DUPLICATE,
                payload=audit_payload,
            )
            logger.info("duplicate webhook skipped", extra={"extra_fields": log_context})
            return {"status": "duplicate", "event_id": event_id}
        cfg = config if config is not None else load_finance_config(cur)
        verify = _needs_verification(cur, event_type, reference)

    verification = None
    if verify:
        if gateway is None:
            verification = VERIFIED_UNKNOWN
        else:
            verification = verify_transfer_outcome(gateway, reference, timeout=cfg.gateway_timeout_seconds)

    try:
        with txn() as cur:
            result = _run_handler(
                cur, event, verification=verification, config=cfg, correlation_id=correlation_id
            )
            if not mark_processed(
                cur,
                provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                payload=audit_payload,
                metadata={"result": result["status"]},
            ):
                raise _ConcurrentDelivery(event_id)
    except _ConcurrentDelivery:
        with txn() as cur:
            record_event(
                cur,
                provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                status=DUPLICATE,
                payload=audit_payload,
                metadata={"reason": "concurrent_delivery"},
            )
        logger.info("concurrent webhook delivery lost the race", extra={"extra_fields": log_context})
        return {"status": "duplicate", "event_id": event_id}
    except Exception as exc:
        with txn() as cur:
            record_event(
                cur,
                provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                status=FAILED,
                payload=audit_payload,
                metadata={"error": type(exc).__name__, "message": str(exc)[:500]},
            )
        logger.exception("webhook processing failed", extra={"extra_fields": log_context})
        raise

    logger.info(
        "webhook processed",
        extra={"extra_fields": {**log_context, "result": result["status"]}},
    )

    if result["status"] == "verification_deferred" and tasks_client is not None:
        tasks_client.enqueue_http(
            task_id=f"reconcile-{result['reference']}",
            url_path=RECONCILE_TASK_PATH,
            payload={"transfer_id": result["transfer_id"], "reference": result["reference"]},
            correlation_id=correlation_id,
        )

    if gateway is not None:
        dispatch_transfers(result.get("dispatch_transfer_ids", []), gateway, config=cfg, correlation_id=correlation_id)

    return {**result, "event_id": event_id}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _send(gateway, transfer: dict) -> dict:
    if transfer["kind"] == "refund":
        return gateway.refund(
            transaction_reference=transfer["charge_reference"],
            amount_kobo=transfer["amount_kobo"],
            merchant_note=transfer["reference"],
        )
    if not transfer["recipient_code"]:
        raise ExternalGatewayError("realtor has no transfer recipient", code="missing_recipient")
    return gateway.initiate_transfer(
        amount_kobo=transfer["amount_kobo"],
        recipient_code=transfer["recipient_code"],
        reference=transfer["reference"],
        reason=f"{transfer['event_type']} {transfer['booking_id']}",
        currency=transfer["currency"],
    )


def dispatch_transfer(
    transfer_id: str,
    gateway,
    *,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Send one in-flight transfer to the gateway.

    Refunds are confirmed on acceptance; bank transfers wait for the
    transfer.success webhook. Any gateway rejection goes through the
    failure path.

    A bank transfer that times out is left undispatched for the next sweep;
    the gateway deduplicates it by reference. A refund has no such key, so
    it is claimed before sending and a timeout leaves it uncertain until
    ``reconcile_refund`` looks it up.
    """
    with txn() as cur:
        transfer = get_transfer(cur, transfer_id, for_update=True)
        if transfer is None:
            raise NotFoundError(f"transfer {transfer_id} not found", code="transfer_not_found")
        if TransferStatus(transfer["status"]) not in IN_FLIGHT_STATUSES or transfer["dispatched_at"]:
            return {"status": "skipped", "transfer_id": transfer_id}
        cfg = config if config is not None else load_finance_config(cur)
        is_refund = transfer["kind"] == "refund"
        if is_refund:
            update_transfer(cur, transfer_id, dispatched_at=utc_now(), metadata={DISPATCH_UNCERTAIN: True})

    reference = transfer["reference"]
    log_context = safe_log_context(correlationId=correlation_id, transfer_id=transfer_id, reference=reference)
    try:
        data = _send(gateway, transfer)
    except GatewayTimeoutError as exc:
        with txn() as cur:
            update_transfer(cur, transfer_id, last_error=str(exc))
        if is_refund:
            logger.warning("refund dispatch timed out, outcome unknown", extra={"extra_fields": log_context})
            return {"status": "uncertain", "transfer_id": transfer_id}
        logger.warning("transfer dispatch timed out", extra={"extra_fields": log_context})
        return {"status": "timeout", "transfer_id": transfer_id}
    except ExternalGatewayError as exc:
        with txn() as cur:
            if is_refund:
                update_transfer(cur, transfer_id, dispatched_at=None, metadata={DISPATCH_UNCERTAIN: False})
            locked = get_transfer(cur, transfer_id, for_update=True)
            result = apply_transfer_failure(
                cur,
                locked,
                failed_reference=reference,
                error=f"dispatch: {exc}",
                verification=None,
                config=cfg,
                correlation_id=correlation_id,
            )
        retry_ids = result.pop("dispatch_transfer_ids", [])
        if retry_ids:
            return dispatch_transfer(retry_ids[0], gateway, config=cfg, correlation_id=correlation_id)
        return result

    now = utc_now()
    summary = _gateway_summary(data)
    with txn() as cur:
        locked = get_transfer(cur, transfer_id, for_update=True)
        if (
            locked["reference"] != reference
            or TransferStatus(locked["status"]) not in IN_FLIGHT_STATUSES
            or (locked["dispatched_at"] and not is_refund)
        ):
            return {"status": "skipped", "transfer_id": transfer_id}
        if is_refund:
            update_transfer(cur, transfer_id, dispatched_at=now, metadata={DISPATCH_UNCERTAIN: False})
            _confirm_transfer(cur, locked, provider_response=summary, now=now)
            status = "confirmed"
        else:
            update_transfer(cur, transfer_id, dispatched_at=now, provider_response=summary)
            status = "dispatched"
        if _pays_realtor(transfer):
            payment = get_payment_by_booking(cur, transfer["booking_id"], for_update=True)
            if payment is not None:
                update_payment(
                    cur,
                    payment["id"],
                    realtor_transfer_initiated_at=now,
                    realtor_transfer_reference=reference,
                )
            emit_event(
                cur,
                event_type="PAYOUT_INITIATED",
                aggregate_type="settlement_transfer",
                aggregate_id=transfer_id,
                payload={
                    "booking_id": transfer["booking_id"],
                    "amount_kobo": transfer["amount_kobo"],
                    "reference": reference,
                },
                correlation_id=correlation_id,
            )

    logger.info(
        "transfer dispatched",
        extra={"extra_fields": {**log_context, "kind": transfer["kind"]}},
    )
    return {"status": status, "transfer_id": transfer_id}


def dispatch_transfers(
    transfer_ids: list[str],
    gateway,
    *,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> list[dict]:
    """Dispatch each transfer; one failure does not stop the rest."""
    results = []
    for transfer_id in transfer_ids:
        try:
            results.append(
                dispatch_transfer(transfer_id, gateway, config=config, correlation_id=correlation_id)
            )
        except Exception:
            logger.exception(
                "transfer dispatch crashed",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id, transfer_id=transfer_id)},
            )
            results.append({"status": "error", "transfer_id": transfer_id})
    return results


def dispatch_pending_transfers(
    gateway,
    *,
    limit: int = 50,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> list[dict]:
    with txn() as cur:
        transfer_ids = list_undispatched(cur, limit=limit)
    return dispatch_transfers(transfer_ids, gateway, config=config, correlation_id=correlation_id)


def reconcile_refund(
    transfer_id: str,
    gateway,
    *,
    now: datetime | None = None,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Settle a refund whose dispatch outcome is unknown.

    Refunds are matched on ``merchant_note``, which carries the transfer
    reference. A match confirms the row. No match releases the claim and
    sends the refund again.
    """
    now = now or utc_now()
    with txn() as cur:
        transfer = get_transfer(cur, transfer_id, for_update=True)
        if transfer is None:
            raise NotFoundError(f"transfer {transfer_id} not found", code="transfer_not_found")
        if (
            TransferStatus(transfer["status"]) not in IN_FLIGHT_STATUSES
            or not transfer["metadata"].get(DISPATCH_UNCERTAIN)
        ):
            return {"status": "skipped", "transfer_id": transfer_id}
        if transfer["dispatched_at"] > now - REFUND_LOOKUP_GRACE:
            return {"status": "uncertain", "transfer_id": transfer_id}
        cfg = config if config is not None else load_finance_config(cur)
        payment = get_payment_by_booking(cur, transfer["booking_id"])
        charge = (payment or {}).get("provider_transaction_id") or transfer["charge_reference"]

    reference = transfer["reference"]
    log_context = safe_log_context(correlationId=correlation_id, transfer_id=transfer_id, reference=reference)
    try:
        refunds = gateway.list_refunds(charge, timeout=cfg.gateway_timeout_seconds)
    except ExternalGatewayError as exc:
        logger.warning(
            "refund lookup failed",
            extra={"extra_fields": {**log_context, "error": str(exc)}},
        )
        return {"status": "uncertain", "transfer_id": transfer_id}

    match = next((r for r in refunds if r.get("merchant_note") == reference), None)
    with txn() as cur:
        locked = get_transfer(cur, transfer_id, for_update=True)
        if locked["reference"] != reference or not locked["metadata"].get(DISPATCH_UNCERTAIN):
            return {"status": "skipped", "transfer_id": transfer_id}
        if match is not None:
            update_transfer(cur, transfer_id, metadata={DISPATCH_UNCERTAIN: False, "recovered_via_lookup": True})
            _confirm_transfer(cur, locked, provider_response=_gateway_summary(match), now=now)
        else:
            update_transfer(cur, transfer_id, dispatched_at=None, metadata={DISPATCH_UNCERTAIN: False})

    if match is not None:
        logger.info("uncertain refund found at gateway", extra={"extra_fields": log_context})
        return {"status": "confirmed", "transfer_id": transfer_id}
    logger.info("uncertain refund not found at gateway, resending", extra={"extra_fields": log_context})
    return dispatch_transfer(transfer_id, gateway, config=cfg, correlation_id=correlation_id)


def reconcile_uncertain_refunds(
    gateway,
    *,
    now: datetime | None = None,
    limit: int = 50,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> list[dict]:
    with txn() as cur:
        transfer_ids = list_uncertain_refunds(cur, limit=limit)
    results = []
    for transfer_id in transfer_ids:
        try:
            results.append(
                reconcile_refund(transfer_id, gateway, now=now, config=config, correlation_id=correlation_id)
            )
        except Exception:
            logger.exception(
                "refund reconciliation crashed",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id, transfer_id=transfer_id)},
            )
            results.append({"status": "error", "transfer_id": transfer_id})
    return results


def reconcile_transfer(
    transfer_id: str,
    reference: str,
    gateway,
    *,
    config: FinanceConfig | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Finish a failure whose verification timed out during the webhook.

    Raises:
        GatewayTimeoutError: Verification timed out again; the task is retried.
    """
    with txn() as cur:
        cfg = config if config is not None else load_finance_config(cur)

    verification = verify_transfer_outcome(gateway, reference, timeout=cfg.gateway_timeout_seconds)
    if verification == VERIFICATION_DEFERRED:
        raise GatewayTimeoutError(f"verification of {reference} timed out")

    with txn() as cur:
        transfer = get_transfer(cur, transfer_id, for_update=True)
        if transfer is None:
            raise NotFoundError(f"transfer {transfer_id} not found", code="transfer_not_found")
        result = apply_transfer_failure(
            cur,
            transfer,
            failed_reference=reference,
            error=transfer["last_error"] or "failure reported by gateway",
            verification=verification,
            config=cfg,
            correlation_id=correlation_id,
        )

    dispatch_transfers(result.pop("dispatch_transfer_ids", []), gateway, config=cfg, correlation_id=correlation_id)
    return result


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


def list_escalated_transfers(*, limit: int = 100) -> list[dict]:
    with txn() as cur:
        return list_transfers(cur, status=TransferStatus.ESCALATED.value, limit=limit)


def resolve_escalated_transfer(
    transfer_id: str,
    *,
    actor: Actor,
    notes: str,
    correlation_id: str | None = None,
) -> dict:
    """Close an escalated (or failed) transfer after manual settlement."""
    with txn() as cur:
        transfer = get_transfer(cur, transfer_id, for_update=True)
        if transfer is None:
            raise NotFoundError(f"transfer {transfer_id} not found", code="transfer_not_found")
        if transfer["status"] not in (TransferStatus.ESCALATED.value, TransferStatus.FAILED.value):
            raise ConflictError(
                f"transfer is {transfer['status']}",
                code="transfer_not_escalated",
                current_state={"status": transfer["status"]},
            )
        update_transfer(
            cur,
            transfer_id,
            status=TransferStatus.RESOLVED.value,
            resolved_at=utc_now(),
            resolved_by=actor.ledger_label,
            metadata={"resolution_notes": notes},
        )

    logger.info(
        "escalated transfer resolved",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, transfer_id=transfer_id)},
    )
    return {"status": "resolved", "transfer_id": transfer_id}
