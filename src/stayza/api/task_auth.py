"""Authentication for worker task endpoints.

Cloud Tasks calls the worker with a Google-signed OIDC token. In local dev
(TASKS_OIDC_AUDIENCE == "stayza-tasks-local") a shared X-Internal-Task-Secret
header is accepted instead.
"""

from __future__ import annotations

import hmac
import os

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context

logger = get_logger(__name__)

_LOCAL_DEV_AUDIENCE = "stayza-tasks-local"
INTERNAL_SECRET_HEADER = "X-Internal-Task-Secret"


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme != "Bearer" or not token:
        return None
    return token


def verify_task_oidc(token: str) -> bool:
    """Verify a Cloud Tasks OIDC token.

    Fails closed when TASKS_OIDC_AUDIENCE is unset. When
    TASKS_OIDC_SERVICE_ACCOUNT is set the token email must match it.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "OIDC token verification failed",
            extra={"extra_fields": safe_log_context(error=str(e), expected_audience=audience)},
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email", "") != expected_email:
        logger.warning(
            "OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(expected_email=expected_email)},
        )
        return False
    return True


def _local_secret_matches(request: Request) -> bool:
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") != _LOCAL_DEV_AUDIENCE:
        return False
    internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
    request_secret = request.headers.get(INTERNAL_SECRET_HEADER, "")
    return bool(internal_secret) and hmac.compare_digest(request_secret, internal_secret)


def verify_task_auth(request: Request) -> bool:
    """True when the request carries a valid task credential."""
    if _local_secret_matches(request):
        logger.info(
            "task auth via internal secret (local dev)",
            extra={"extra_fields": safe_log_context(auth_method="internal_secret")},
        )
        return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)


def require_task_auth(request: Request) -> None:
    """FastAPI dependency guarding /tasks/* endpoints."""
    if not verify_task_auth(request):
        raise HTTPException(status_code=401, detail="Unauthorized")
