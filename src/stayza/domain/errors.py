"""Error taxonomy for the escrow engine.

Every error carries a machine-readable ``code`` that routes return verbatim
alongside a human-readable message.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for escrow engine errors."""

    code = "engine_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(EngineError):
    """Bad input (dates, amounts, percentages). No state was changed."""

    code = "validation_error"


class LedgerOverdrawError(ValidationError):
    """A ledger write would move more money out of escrow than went in."""

    code = "ledger_overdraw"


class AuthorizationError(EngineError):
    """The actor is not allowed to perform this action on this booking."""

    code = "forbidden"


class NotFoundError(EngineError):
    """Booking, payment or transfer does not exist."""

    code = "not_found"


class ConflictError(EngineError):
    """A transition guard failed against the current persisted state."""

    code = "conflict"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        current_state: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.current_state = current_state or {}

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["current_state"] = self.current_state
        return detail


class ExternalGatewayError(EngineError):
    """The payment gateway rejected a call or returned something unusable."""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class GatewayTimeoutError(ExternalGatewayError):
    """The gateway did not answer within the configured timeout."""

    code = "gateway_timeout"


class SettlementIncident(EngineError):
    """A critical transfer exhausted its retries and needs manual resolution."""

    code = "settlement_incident"

    def __init__(self, message: str, *, transfer_id: str, booking_id: str) -> None:
        super().__init__(message)
        self.transfer_id = transfer_id
        self.booking_id = booking_id
