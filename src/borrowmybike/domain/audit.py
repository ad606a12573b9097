"""Best-effort audit trail for booking decisions."""

from __future__ import annotations

from borrowmybike.domain.ledger import LedgerStore
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"
ADMIN_ACTOR = "admin"


def record_audit(
    ledger: LedgerStore,
    booking_id: str,
    *,
    action: str,
    actor_role: str = SYSTEM_ACTOR,
    actor_user_id: str | None = None,
    note: str | None = None,
) -> bool:
    """Append an audit record. A failure is logged and reported, never raised."""
    try:
        ledger.append_audit(
            booking_id,
            actor_role=actor_role,
            actor_user_id=actor_user_id,
            action=action,
            note=note,
        )
    except Exception as exc:
        logger.warning(
            "audit log write failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id, action=action, error=str(exc)
                )
            },
        )
        return False
    return True
