"""Admin resolution of disputed bookings.

Admin decisions only set flags; the classifier and settlement executor
then decide the money, exactly as for bookings that never needed review.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any

from borrowmybike.domain.audit import ADMIN_ACTOR, record_audit
from borrowmybike.domain.bookings import get_booking_or_raise
from borrowmybike.domain.classifier import BORROWER_FAULT, classify
from borrowmybike.domain.errors import BookingValidationError, PreconditionError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import Booking, Role
from borrowmybike.domain.settlement import SettlementService
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


class ReviewDecision(str, Enum):
    APPROVE_SETTLE = "approve_settle"
    OWNER_FAULT = "owner_fault"
    BORROWER_FAULT = "borrower_fault"
    REJECT_CLEAR_FLAGS = "reject_clear_flags"


def _flags_for(decision: ReviewDecision) -> dict[str, Any]:
    if decision is ReviewDecision.OWNER_FAULT:
        return {"needs_review": False, "bike_invalid": True}
    if decision is ReviewDecision.BORROWER_FAULT:
        return {"needs_review": False, "bike_invalid": False, "review_reason": BORROWER_FAULT}
    if decision is ReviewDecision.REJECT_CLEAR_FLAGS:
        return {"needs_review": False, "bike_invalid": False, "review_reason": None}
    return {"needs_review": False}


def _require_open(booking: Booking) -> None:
    if booking.cancelled:
        raise PreconditionError("booking is cancelled")
    if booking.settled:
        raise PreconditionError("booking is already settled")
    if not booking.fully_paid:
        raise PreconditionError("booking is not confirmed: both payments are required")


def resolve_review(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    decision: str,
    now: datetime,
    admin_user_id: str | None = None,
    note: str | None = None,
) -> dict[str, Any]:
    """Apply an admin decision to a booking under review and settle it.

    The outcome is classified on a copy with the new flags first, so an
    inconsistent decision is refused before anything is written.

    Args:
        ledger: Ledger store.
        gateway: Payment gateway for the settlement legs.
        booking_id: Booking UUID.
        decision: approve_settle, owner_fault, borrower_fault or reject_clear_flags.
        now: Decision time.
        admin_user_id: Admin making the decision.
        note: Free-text note for the audit row.

    Raises:
        BookingValidationError: Unknown decision.
        PreconditionError: Booking cancelled or settled.
        UnclassifiableBookingError: Decision leaves flags that match no scenario.
    """
    try:
        parsed = ReviewDecision(decision)
    except ValueError:
        raise BookingValidationError(f"unknown decision: {decision}")

    booking = get_booking_or_raise(ledger, booking_id)
    _require_open(booking)

    flags = _flags_for(parsed)
    settles = parsed is not ReviewDecision.REJECT_CLEAR_FLAGS
    if settles:
        classify(replace(booking, **flags))

    if ledger.update_review_flags(booking.id, **flags) is None:
        raise PreconditionError("booking changed state, reload and retry")

    record_audit(
        ledger,
        booking.id,
        action=f"review_resolved:{parsed.value}",
        actor_role=ADMIN_ACTOR,
        actor_user_id=admin_user_id,
        note=note,
    )
    logger.info(
        "review resolved",
        extra={"extra_fields": safe_log_context(booking_id=booking.id, decision=parsed.value)},
    )

    if not settles:
        return {"decision": parsed.value, "settlement": None}

    result = SettlementService(ledger, gateway, clock=lambda: now).settle(
        booking.id, actor_role=ADMIN_ACTOR, actor_user_id=admin_user_id
    )
    return {"decision": parsed.value, "settlement": result.to_payload()}


def resolve_no_show(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    no_show_party: str,
    now: datetime,
    admin_user_id: str | None = None,
    note: str | None = None,
) -> dict[str, Any]:
    """Admin rules that one party did not show up, then settles."""
    try:
        absent = Role(no_show_party)
    except ValueError:
        raise BookingValidationError("no_show_party must be 'borrower' or 'owner'")

    booking = get_booking_or_raise(ledger, booking_id)
    _require_open(booking)

    flag = "treat_as_borrower_no_show" if absent is Role.BORROWER else "treat_as_owner_no_show"
    flags: dict[str, Any] = {"needs_review": False, flag: True}
    classify(replace(booking, **flags))

    if ledger.update_review_flags(booking.id, **flags) is None:
        raise PreconditionError("booking changed state, reload and retry")

    record_audit(
        ledger,
        booking.id,
        action=f"no_show_resolved:{absent.value}",
        actor_role=ADMIN_ACTOR,
        actor_user_id=admin_user_id,
        note=note,
    )
    result = SettlementService(ledger, gateway, clock=lambda: now).settle(
        booking.id, actor_role=ADMIN_ACTOR, actor_user_id=admin_user_id
    )
    return {"no_show_party": absent.value, "settlement": result.to_payload()}
