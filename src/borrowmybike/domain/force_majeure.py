"""Mutual call-off before the test (weather, illness, road closures).

Each party records agreement separately inside the force-majeure window.
When the second agreement lands the booking settles as a wash: both
payments come back as credit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from borrowmybike.domain.audit import record_audit
from borrowmybike.domain.bookings import get_booking_or_raise
from borrowmybike.domain.errors import PreconditionError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import Role
from borrowmybike.domain.settlement import SettlementService
from borrowmybike.domain.windows import force_majeure_window
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


def agree_force_majeure(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    role: Role,
    now: datetime,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Record one party's agreement; settle once both have agreed.

    Returns:
        {"both_agreed": bool, "settlement": dict | None}

    Raises:
        PreconditionError: Not confirmed, cancelled, settled, or window closed.
    """
    booking = get_booking_or_raise(ledger, booking_id)
    service = SettlementService(ledger, gateway, clock=lambda: now)

    if booking.settled:
        return {"both_agreed": True, "settlement": service.settle(booking.id).to_payload()}
    if booking.cancelled:
        raise PreconditionError("booking is cancelled")
    if not booking.fully_paid:
        raise PreconditionError("booking is not confirmed: both payments are required")

    window = force_majeure_window(
        booking.scheduled_start, booking.borrower_checked_in, booking.owner_checked_in, now
    )
    if not window.allowed:
        raise PreconditionError("force majeure window is closed", window=window.to_payload())

    # Guarded on "nobody checked in" so a check-in racing this call wins cleanly
    updated = ledger.record_force_majeure_agreement(booking.id, role, now)
    if updated is None:
        raise PreconditionError("force majeure window is closed", window=window.to_payload())

    both_agreed = (
        updated.force_majeure_borrower_agreed_at is not None
        and updated.force_majeure_owner_agreed_at is not None
    )
    record_audit(
        ledger,
        booking.id,
        action="force_majeure_agreed",
        actor_role=role.value,
        actor_user_id=user_id,
    )
    logger.info(
        "force majeure agreement recorded",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id, role=role.value, both_agreed=both_agreed
            )
        },
    )

    if not both_agreed:
        return {"both_agreed": False, "settlement": None}
    return {"both_agreed": True, "settlement": service.settle(booking.id).to_payload()}
