"""Worker routes for settlement tasks.

All endpoints require task auth (Cloud Tasks OIDC, or the shared secret
in local dev).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from stayza.api.dependencies import require_gateway
from stayza.api.task_auth import require_task_auth
from stayza.domain import settlement, sweep
from stayza.domain.errors import GatewayTimeoutError, NotFoundError
from stayza.observability.correlation import get_correlation_id
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context
from stayza.paystack.client import PaystackClient

router = APIRouter(
    prefix="/tasks/settlement",
    tags=["tasks"],
    dependencies=[Depends(require_task_auth)],
)

logger = get_logger(__name__)


class TransferTask(BaseModel):
    transfer_id: str


class ReconcileTask(BaseModel):
    transfer_id: str
    reference: str


@router.post("/sweep")
def run_sweep(gateway: PaystackClient = Depends(require_gateway)) -> dict:
    """Apply every due time-based transition, then retry undispatched transfers."""
    return sweep.run_sweep(gateway=gateway, correlation_id=get_correlation_id())


@router.post("/dispatch-transfer", response_model=None)
def dispatch_transfer(
    task: TransferTask,
    gateway: PaystackClient = Depends(require_gateway),
) -> Response | dict:
    try:
        return settlement.dispatch_transfer(
            task.transfer_id, gateway, correlation_id=get_correlation_id()
        )
    except NotFoundError:
        # Nothing to retry; ack so Cloud Tasks drops it
        logger.warning(
            "dispatch task for unknown transfer",
            extra={"extra_fields": safe_log_context(transfer_id=task.transfer_id)},
        )
        return {"status": "not_found", "transfer_id": task.transfer_id}


@router.post("/reconcile-transfer", response_model=None)
def reconcile_transfer(
    task: ReconcileTask,
    gateway: PaystackClient = Depends(require_gateway),
) -> Response | dict:
    """Finish a transfer failure whose verification was deferred.

    Returns 503 when verification times out again so Cloud Tasks retries.
    """
    correlation_id = get_correlation_id()
    try:
        return settlement.reconcile_transfer(
            task.transfer_id, task.reference, gateway, correlation_id=correlation_id
        )
    except GatewayTimeoutError:
        logger.warning(
            "transfer verification timed out again",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, transfer_id=task.transfer_id
                )
            },
        )
        return Response(status_code=503)
    except NotFoundError:
        return {"status": "not_found", "transfer_id": task.transfer_id}
