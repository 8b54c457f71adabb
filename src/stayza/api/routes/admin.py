"""Operator routes: blocked dates, dispute resolution, escalated transfers."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Path, Query
from pydantic import BaseModel, Field

from stayza.api.auth import CurrentUser, get_current_user, require_admin
from stayza.api.dependencies import get_tasks_client
from stayza.api.errors import http_error
from stayza.api.routes.bookings import enqueue_dispatch
from stayza.domain import lifecycle, settlement
from stayza.domain.errors import EngineError, ValidationError
from stayza.domain.states import DisputeSubject
from stayza.observability.correlation import get_correlation_id
from stayza.tasks.client import TasksClient

router = APIRouter(prefix="/admin", tags=["admin"])


class BlockedDatesRequest(BaseModel):
    property_id: str
    check_in_date: date
    check_out_date: date
    reason: str | None = Field(default=None, max_length=500)


class ResolveDisputeRequest(BaseModel):
    subject: DisputeSubject
    refund_percent: int | None = Field(default=None, ge=0, le=100)
    approved_kobo: int | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=2000)


class ResolveTransferRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000)


@router.post("/blocked-dates", status_code=201)
def create_blocked_dates(
    body: BlockedDatesRequest,
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Admins, or the property's realtor, can block dates without payment."""
    try:
        return lifecycle.create_blocked_dates_booking(
            property_id=body.property_id,
            actor=user.actor,
            check_in_date=body.check_in_date,
            check_out_date=body.check_out_date,
            reason=body.reason,
            correlation_id=get_correlation_id(),
        )
    except EngineError as exc:
        raise http_error(exc)


@router.post("/blocked-dates/{booking_id}/cancel")
def cancel_blocked_dates(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        return lifecycle.cancel_blocked_dates_booking(
            booking_id, actor=user.actor, correlation_id=get_correlation_id()
        )
    except EngineError as exc:
        raise http_error(exc)


@router.post("/bookings/{booking_id}/disputes/resolve")
def resolve_dispute(
    body: ResolveDisputeRequest,
    booking_id: str = Path(...),
    user: CurrentUser = Depends(require_admin),
    tasks_client: TasksClient = Depends(get_tasks_client),
) -> dict:
    correlation_id = get_correlation_id()
    try:
        if body.subject == DisputeSubject.ROOM_FEE:
            if body.refund_percent is None:
                raise ValidationError("refund_percent is required", code="missing_refund_percent")
            result = lifecycle.resolve_room_fee_dispute(
                booking_id,
                actor=user.actor,
                refund_percent=body.refund_percent,
                notes=body.notes,
                correlation_id=correlation_id,
            )
        else:
            if body.approved_kobo is None:
                raise ValidationError("approved_kobo is required", code="missing_approved_amount")
            result = lifecycle.resolve_deposit_dispute(
                booking_id,
                actor=user.actor,
                approved_kobo=body.approved_kobo,
                notes=body.notes,
                correlation_id=correlation_id,
            )
    except EngineError as exc:
        raise http_error(exc)

    enqueue_dispatch(tasks_client, result.get("transfer_ids", []))
    return result


@router.get("/transfers/escalated")
def escalated_transfers(
    limit: int = Query(default=100, ge=1, le=500),
    user: CurrentUser = Depends(require_admin),
) -> dict:
    return {"transfers": settlement.list_escalated_transfers(limit=limit)}


@router.post("/transfers/{transfer_id}/resolve")
def resolve_transfer(
    body: ResolveTransferRequest,
    transfer_id: str = Path(...),
    user: CurrentUser = Depends(require_admin),
) -> dict:
    try:
        return settlement.resolve_escalated_transfer(
            transfer_id,
            actor=user.actor,
            notes=body.notes,
            correlation_id=get_correlation_id(),
        )
    except EngineError as exc:
        raise http_error(exc)
