"""Redaction helpers for safe logging. All external data must pass through these.

Gateway payloads carry customer e-mails, bank account numbers and card
authorization codes; none of them may reach the logs.
"""

import re
from typing import Any

_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_AUTH_CODE_PATTERN = re.compile(r"\bAUTH_[A-Za-z0-9]+\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
# NUBAN account numbers are exactly 10 digits
_ACCOUNT_NUMBER_PATTERN = re.compile(r"\b\d{10}\b")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact PII and payment credential patterns from a string."""
    result = _EMAIL_PATTERN.sub(_REDACTED, value)
    result = _AUTH_CODE_PATTERN.sub(_REDACTED, result)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _ACCOUNT_NUMBER_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Structure only, never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
