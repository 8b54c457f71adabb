"""Translate domain errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from stayza.domain.errors import (
    AuthorizationError,
    ConflictError,
    EngineError,
    ExternalGatewayError,
    NotFoundError,
    ValidationError,
)

_STATUS_CODES: tuple[tuple[type[EngineError], int], ...] = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ExternalGatewayError, 502),
)


def http_error(exc: EngineError) -> HTTPException:
    """HTTPException with detail {"code", "message", "current_state"?}."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_detail())
    return HTTPException(status_code=500, detail=exc.to_detail())
