"""Redaction helpers for safe logging. All external data must pass through these."""

import re
from typing import Any

_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# Stripe secrets and webhook signing keys
_SECRET_PATTERN = re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact PII and credentials from a string."""
    result = _SECRET_PATTERN.sub(_REDACTED, value)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
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
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def id_prefix(value: str | None, length: int = 8) -> str | None:
    """Leading characters of an external ID, enough to correlate with the gateway dashboard."""
    return value[:length] if value else value


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted.

    Args:
        **kwargs: Fields to log.

    Returns:
        Dict with the same keys and redacted string values.
    """
    return {k: redact_value(v) for k, v in kwargs.items()}
