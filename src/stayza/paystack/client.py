"""Thin wrapper around the Paystack REST API.

Purpose:
- Keep gateway HTTP calls out of domain code.
- Bound every call with a timeout; slow calls raise GatewayTimeoutError.
- Never log full gateway payloads (only references and status).
"""

from __future__ import annotations

import os
from typing import Any

import requests

from stayza.domain.errors import ExternalGatewayError, GatewayTimeoutError
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"
DEFAULT_TIMEOUT_SECONDS = 8.0


class PaystackClient:
    """Paystack transfers, refunds and verification.

    Usage:
        client = PaystackClient()  # reads PAYSTACK_SECRET_KEY from env
        client.initiate_transfer(
            amount_kobo=9_000_000,
            recipient_code="RCP_xxx",
            reference="room_fee_<booking>_e12",
            reason="Room fee payout",
        )
    """

    def __init__(
        self,
        secret_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the client.

        Raises:
            RuntimeError: If no secret key is provided or found in environment.
        """
        self._secret_key = secret_key or os.environ.get("PAYSTACK_SECRET_KEY")
        if not self._secret_key:
            raise RuntimeError(
                "Paystack secret key not provided. "
                "Set PAYSTACK_SECRET_KEY or pass secret_key parameter."
            )
        self._base_url = (base_url or os.environ.get("PAYSTACK_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self._timeout = timeout or float(
            os.environ.get("PAYSTACK_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        )
        self._session = session or requests.Session()

    @property
    def timeout(self) -> float:
        return self._timeout

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=json_body,
                headers={
                    "Authorization": f"Bearer {self._secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=timeout or self._timeout,
            )
        except requests.Timeout as exc:
            logger.warning(
                "paystack request timed out",
                extra={"extra_fields": safe_log_context(path=path)},
            )
            raise GatewayTimeoutError(f"{method} {path} timed out") from exc
        except requests.RequestException as exc:
            raise ExternalGatewayError(f"{method} {path} failed: {type(exc).__name__}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            logger.warning(
                "paystack request rejected",
                extra={
                    "extra_fields": safe_log_context(
                        path=path,
                        status_code=response.status_code,
                        message=body.get("message"),
                    )
                },
            )
            raise ExternalGatewayError(
                body.get("message") or f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )

        return body.get("data") or {}

    def initiate_transfer(
        self,
        *,
        amount_kobo: int,
        recipient_code: str,
        reference: str,
        reason: str,
        currency: str = "NGN",
    ) -> dict[str, Any]:
        """POST /transfer. The reference doubles as the gateway idempotency key."""
        data = self._request(
            "POST",
            "/transfer",
            json_body={
                "source": "balance",
                "amount": amount_kobo,
                "recipient": recipient_code,
                "reference": reference,
                "reason": reason,
                "currency": currency,
            },
        )
        logger.info(
            "paystack transfer initiated",
            extra={
                "extra_fields": safe_log_context(
                    reference=reference,
                    transfer_code=data.get("transfer_code"),
                    status=data.get("status"),
                )
            },
        )
        return data

    def verify_transfer(self, reference: str, *, timeout: float | None = None) -> dict[str, Any]:
        """GET /transfer/verify/{reference}."""
        return self._request("GET", f"/transfer/verify/{reference}", timeout=timeout)

    def refund(
        self,
        *,
        transaction_reference: str,
        amount_kobo: int,
        merchant_note: str | None = None,
    ) -> dict[str, Any]:
        """POST /refund against the original charge."""
        body: dict[str, Any] = {"transaction": transaction_reference, "amount": amount_kobo}
        if merchant_note:
            body["merchant_note"] = merchant_note
        data = self._request("POST", "/refund", json_body=body)
        logger.info(
            "paystack refund created",
            extra={
                "extra_fields": safe_log_context(
                    transaction_reference=transaction_reference,
                    status=data.get("status"),
                )
            },
        )
        return data

    def verify_transaction(self, reference: str) -> dict[str, Any]:
        """GET /transaction/verify/{reference}."""
        return self._request("GET", f"/transaction/verify/{reference}")

    def list_refunds(self, transaction: str, *, timeout: float | None = None) -> list[dict[str, Any]]:
        """GET /refund for one charge (transaction id or reference)."""
        data = self._request("GET", f"/refund?transaction={transaction}", timeout=timeout)
        return data if isinstance(data, list) else []
