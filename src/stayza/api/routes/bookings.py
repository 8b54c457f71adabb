"""Booking routes for guests and realtors.

Money-moving endpoints return once the transaction has committed; outbound
transfers they schedule are dispatched by a worker task (and by the sweep
as a fallback).
"""

from __future__ import annotations

from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field

from stayza.api.auth import CurrentUser, get_current_user
from stayza.api.dependencies import get_tasks_client
from stayza.api.errors import http_error
from stayza.domain import lifecycle
from stayza.domain.actors import ROLE_GUEST, ROLE_REALTOR
from stayza.domain.errors import EngineError
from stayza.observability.correlation import get_correlation_id
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context
from stayza.tasks.client import TasksClient

router = APIRouter(prefix="/bookings", tags=["bookings"])

logger = get_logger(__name__)

DISPATCH_TASK_PATH = "/tasks/settlement/dispatch-transfer"


class StayRequest(BaseModel):
    property_id: str
    check_in_date: date
    check_out_date: date
    processing_mode: Literal["local", "international"] = "local"


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    claim_kobo: int | None = Field(default=None, gt=0)


def enqueue_dispatch(tasks_client: TasksClient, transfer_ids: list[str]) -> None:
    correlation_id = get_correlation_id()
    for transfer_id in transfer_ids:
        tasks_client.enqueue_http(
            task_id=f"dispatch-{transfer_id}",
            url_path=DISPATCH_TASK_PATH,
            payload={"transfer_id": transfer_id},
            correlation_id=correlation_id,
        )


@router.post("/quote")
def quote(body: StayRequest, user: CurrentUser = Depends(get_current_user)) -> dict:
    try:
        result = lifecycle.quote_stay(
            property_id=body.property_id,
            check_in_date=body.check_in_date,
            check_out_date=body.check_out_date,
            processing_mode=body.processing_mode,
        )
    except EngineError as exc:
        raise http_error(exc)
    return result.to_dict()


@router.post("", status_code=201)
def create_booking(body: StayRequest, user: CurrentUser = Depends(get_current_user)) -> dict:
    """Create a PENDING booking; the guest pays using ``payment_reference``."""
    try:
        return lifecycle.create_booking(
            property_id=body.property_id,
            guest=user.actor,
            check_in_date=body.check_in_date,
            check_out_date=body.check_out_date,
            processing_mode=body.processing_mode,
            correlation_id=get_correlation_id(),
        )
    except EngineError as exc:
        raise http_error(exc)


@router.get("/{booking_id}")
def get_booking(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        return lifecycle.get_booking_view(booking_id, actor=user.actor)
    except EngineError as exc:
        raise http_error(exc)


@router.get("/{booking_id}/cancel-preview")
def cancel_preview(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        return lifecycle.preview_cancellation(booking_id, actor=user.actor)
    except EngineError as exc:
        raise http_error(exc)


@router.post("/{booking_id}/cancel")
def cancel(
    body: CancelRequest,
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
    tasks_client: TasksClient = Depends(get_tasks_client),
) -> dict:
    try:
        result = lifecycle.cancel_booking(
            booking_id,
            actor=user.actor,
            reason=body.reason,
            correlation_id=get_correlation_id(),
        )
    except EngineError as exc:
        raise http_error(exc)

    enqueue_dispatch(tasks_client, result.get("transfer_ids", []))
    return result


@router.post("/{booking_id}/check-in")
def check_in(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        return lifecycle.confirm_checkin(booking_id, actor=user.actor, correlation_id=get_correlation_id())
    except EngineError as exc:
        raise http_error(exc)


@router.post("/{booking_id}/check-out")
def check_out(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        return lifecycle.confirm_checkout(booking_id, actor=user.actor, correlation_id=get_correlation_id())
    except EngineError as exc:
        raise http_error(exc)


@router.get("/{booking_id}/dispute-windows")
def dispute_windows(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        return lifecycle.get_dispute_windows(booking_id, actor=user.actor)
    except EngineError as exc:
        raise http_error(exc)


@router.post("/{booking_id}/disputes", status_code=201)
def open_dispute(
    body: DisputeRequest,
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Guests dispute the room fee; realtors claim against the deposit."""
    correlation_id = get_correlation_id()
    try:
        if user.role == ROLE_GUEST:
            result = lifecycle.open_guest_dispute(
                booking_id, actor=user.actor, reason=body.reason, correlation_id=correlation_id
            )
        elif user.role == ROLE_REALTOR:
            if body.claim_kobo is None:
                raise HTTPException(status_code=422, detail="claim_kobo is required")
            result = lifecycle.open_deposit_dispute(
                booking_id,
                actor=user.actor,
                claim_kobo=body.claim_kobo,
                reason=body.reason,
                correlation_id=correlation_id,
            )
        else:
            raise HTTPException(status_code=403, detail="Only guests and realtors open disputes")
    except EngineError as exc:
        raise http_error(exc)

    logger.info(
        "dispute opened",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                subject=result["subject"],
            )
        },
    )
    return result


@router.get("/{booking_id}/escrow-events")
def escrow_events(
    booking_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        events = lifecycle.get_escrow_timeline(booking_id, actor=user.actor)
    except EngineError as exc:
        raise http_error(exc)
    return {"booking_id": booking_id, "events": events}
