"""HTTP backend for tasks - POSTs tasks straight to the worker.

Used where api and worker run as separate containers on one network.
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from stayza.observability.logging import get_logger

logger = get_logger(__name__)

WORKER_BASE_URL = os.environ.get("WORKER_BASE_URL", "http://worker:8000")
INTERNAL_TASK_SECRET = os.environ.get("INTERNAL_TASK_SECRET", "")
HTTP_TIMEOUT = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))

# Must match task_auth._LOCAL_DEV_AUDIENCE
_LOCAL_DEV_AUDIENCE = "stayza-tasks-local"


def _fetch_oidc_token(audience: str) -> str | None:
    """Fetch a GCP ID token for ``audience`` from the metadata server or ADC."""
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": {"audience": audience, "error": str(e)}},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task to the worker.

    Returns:
        True if the worker answered 2xx, False otherwise.
    """
    if schedule_time is not None:
        # The sweep picks up anything time-based; nothing to schedule here
        logger.warning(
            "HTTP backend does not support scheduled tasks",
            extra={"extra_fields": {"task_id": task_id}},
        )
        return True

    url = f"{WORKER_BASE_URL}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-Id": correlation_id or "",
        "X-Task-Id": task_id,
    }

    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        if INTERNAL_TASK_SECRET:
            headers["X-Internal-Task-Secret"] = INTERNAL_TASK_SECRET
    else:
        token = _fetch_oidc_token(WORKER_BASE_URL)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=HTTP_TIMEOUT)
        response.raise_for_status()
        logger.info(
            "HTTP task enqueued",
            extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
        )
        return True
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={"extra_fields": {"task_id": task_id, "url_path": url_path, "error": str(e)}},
        )
        return False
