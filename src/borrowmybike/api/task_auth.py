"""Authentication for scheduler-invoked worker routes.

Cloud Scheduler calls the worker with a Google-signed OIDC token. For local
development (TASKS_OIDC_AUDIENCE == "borrowmybike-tasks-local") the
X-Internal-Task-Secret header is accepted instead.
"""

from __future__ import annotations

import base64
import hmac
import json
import os

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Local dev audience - enables X-Internal-Task-Secret fallback
_LOCAL_DEV_AUDIENCE = "borrowmybike-tasks-local"


def _unverified_audience(token: str) -> str | None:
    """Read ``aud`` from an unverified JWT, for logging a failed verification only."""
    try:
        segment = token.split(".")[1]
        segment += "=" * (-len(segment) % 4)
        value = json.loads(base64.urlsafe_b64decode(segment)).get("aud")
    except (IndexError, ValueError, AttributeError):
        return None
    return str(value) if value is not None else None


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer "):]


def verify_task_oidc(token: str) -> bool:
    """Verify a Google-signed OIDC token for the worker.

    Checks the audience against TASKS_OIDC_AUDIENCE and, when
    TASKS_OIDC_SERVICE_ACCOUNT is set, the token's email. Fails closed when
    no audience is configured.

    Args:
        token: Bearer token from the Authorization header.

    Returns:
        True if the token is valid for this worker.
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
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    expected_audience=audience,
                    received_audience=_unverified_audience(token),
                )
            },
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


def verify_task_auth(request: Request) -> bool:
    """Authenticate a worker request via OIDC or the local-dev shared secret."""
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        request_secret = request.headers.get("X-Internal-Task-Secret", "")
        if internal_secret and hmac.compare_digest(request_secret, internal_secret):
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
    """FastAPI dependency wrapping verify_task_auth.

    Raises:
        HTTPException: 401 when the caller is not the scheduler.
    """
    if not verify_task_auth(request):
        raise HTTPException(status_code=401, detail="Unauthorized")
