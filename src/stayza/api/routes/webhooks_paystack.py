"""Paystack webhook route.

Security rules:
- Validate x-paystack-signature on every request, before parsing.
- Never log payload or signature header.
- Malformed payloads are rejected before any mutation.
- Return 5xx when processing fails so Paystack redelivers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from stayza.api.dependencies import get_gateway, get_tasks_client
from stayza.domain.settlement import process_webhook
from stayza.infra.hashing import get_gateway_secret
from stayza.observability.correlation import get_correlation_id
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context
from stayza.paystack.client import PaystackClient
from stayza.paystack.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    verify_and_parse,
)
from stayza.tasks.client import TasksClient

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/webhooks/paystack")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: str | None = Header(default=None, alias="x-paystack-signature"),
    gateway: PaystackClient | None = Depends(get_gateway),
    tasks_client: TasksClient = Depends(get_tasks_client),
) -> Response:
    """Receive Paystack events.

    Returns:
        200 when processed, duplicate or ignored; 401 on a bad signature;
        400 on a malformed payload; 500 when processing failed.
    """
    correlation_id = get_correlation_id()
    payload_bytes = await request.body()

    try:
        secret = get_gateway_secret()
    except RuntimeError:
        logger.error(
            "paystack webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500)

    try:
        event, body = verify_and_parse(payload_bytes, x_paystack_signature, secret)
    except InvalidSignatureError:
        logger.warning(
            "paystack webhook signature invalid",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401)
    except InvalidPayloadError as exc:
        logger.warning(
            "paystack webhook payload invalid",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(exc))},
        )
        return Response(status_code=400)

    try:
        result = await run_in_threadpool(
            process_webhook,
            event,
            body,
            gateway=gateway,
            tasks_client=tasks_client,
            correlation_id=correlation_id,
        )
    except Exception:
        # Already audited as FAILED; Paystack retries on 5xx
        return Response(status_code=500)

    return JSONResponse({"status": result["status"]})
