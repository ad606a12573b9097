"""Admin gate for operator routes.

Booking-level access (borrower vs owner) is derived from booking membership
in the domain layer; this module only answers "is the caller an admin".
"""

from __future__ import annotations

from fastapi import Depends, HTTPException

from borrowmybike.api.auth import CurrentUser, get_current_user
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """FastAPI dependency: authenticated user with ``users.is_admin``.

    Raises:
        HTTPException: 403 if the user is not an admin.
    """
    if not user.is_admin:
        logger.warning(
            "admin route denied",
            extra={"extra_fields": safe_log_context(user_id=user.id)},
        )
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
