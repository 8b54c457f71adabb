"""Paystack webhook signature validation and typed payload parsing.

Purpose:
- Validate x-paystack-signature (HMAC-SHA512 of the raw body) before parsing.
- Parse the body into one validated model per event type.
- Never log payload or signature.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from stayza.infra.hashing import signature_matches

PROVIDER = "paystack"
SIGNATURE_HEADER = "x-paystack-signature"


class InvalidSignatureError(Exception):
    """Webhook signature validation failed."""


class InvalidPayloadError(Exception):
    """Payload is not JSON or does not match its event schema."""


class _EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    reference: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)
    id: int | str | None = None
    message: str | None = None
    gateway_response: str | None = None


class ChargeData(_EventData):
    status: str | None = None
    paid_at: str | None = None
    currency: str | None = None
    authorization: dict[str, Any] | None = None


class TransferData(_EventData):
    transfer_code: str | None = None
    status: str | None = None
    reason: str | None = None
    currency: str | None = None


class ChargeSuccess(BaseModel):
    event: Literal["charge.success"]
    data: ChargeData


class ChargeFailed(BaseModel):
    event: Literal["charge.failed"]
    data: ChargeData


class TransferSuccess(BaseModel):
    event: Literal["transfer.success"]
    data: TransferData


class TransferFailed(BaseModel):
    event: Literal["transfer.failed"]
    data: TransferData


class TransferReversed(BaseModel):
    event: Literal["transfer.reversed"]
    data: TransferData


class UnhandledEvent(BaseModel):
    """Any event type the engine does not act on; acknowledged and logged."""

    model_config = ConfigDict(extra="allow")

    event: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> str:
        return str(self.data.get("reference") or self.data.get("id") or "unknown")


GatewayEvent = Annotated[
    Union[ChargeSuccess, ChargeFailed, TransferSuccess, TransferFailed, TransferReversed],
    Field(discriminator="event"),
]

HANDLED_EVENT_TYPES = frozenset({
    "charge.success",
    "charge.failed",
    "transfer.success",
    "transfer.failed",
    "transfer.reversed",
})

_gateway_event_adapter = TypeAdapter(GatewayEvent)


def event_reference(event: BaseModel) -> str:
    if isinstance(event, UnhandledEvent):
        return event.reference
    return event.data.reference


def parse_event(body: dict[str, Any]):
    """Validate a decoded body into its event model.

    Raises:
        InvalidPayloadError: If the body does not match its event schema.
    """
    event_type = body.get("event") if isinstance(body, dict) else None
    if not isinstance(event_type, str) or not event_type:
        raise InvalidPayloadError("missing event type")

    try:
        if event_type not in HANDLED_EVENT_TYPES:
            return UnhandledEvent.model_validate(body)
        return _gateway_event_adapter.validate_python(body)
    except PydanticValidationError as exc:
        raise InvalidPayloadError(f"{event_type}: {exc.error_count()} invalid field(s)") from exc


def verify_and_parse(
    payload_bytes: bytes,
    signature_header: str | None,
    secret: bytes,
) -> tuple[Any, dict[str, Any]]:
    """Check the signature, then decode and validate the body.

    Returns:
        (typed event, decoded body) - the body is kept for the audit log.

    Raises:
        InvalidSignatureError: If the signature is missing or wrong.
        InvalidPayloadError: If the body is not valid JSON or fails validation.
    """
    if not signature_matches(payload_bytes, signature_header, secret):
        raise InvalidSignatureError("signature mismatch")

    try:
        body = json.loads(payload_bytes)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayloadError("body is not valid JSON") from exc

    return parse_event(body), body
