"""Day-of-test actions: check-in, completion, no-show claims, examiner refusal.

Every action re-checks its time window against ``now`` on each call; there
are no timers. Actions that end the booking hand off to SettlementService.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from borrowmybike.domain.audit import record_audit
from borrowmybike.domain.bookings import get_booking_or_raise
from borrowmybike.domain.classifier import EXAMINER_REFUSAL
from borrowmybike.domain.errors import AlreadyDone, BookingValidationError, PreconditionError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import Booking, DepositChoice, Role
from borrowmybike.domain.settlement import SettlementService
from borrowmybike.domain.windows import (
    check_in_window,
    completion_window,
    examiner_refusal_window,
    no_show_window,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

EXAMINER_REFUSAL_REASONS = ("motorcycle_issue", "borrower_issue", "other")


def _require_active(booking: Booking) -> None:
    if booking.cancelled:
        raise PreconditionError("booking is cancelled")
    if booking.settled:
        raise PreconditionError("booking is already settled")
    if not booking.fully_paid:
        raise PreconditionError("booking is not confirmed: both payments are required")


def check_in(
    ledger: LedgerStore,
    booking_id: str,
    *,
    role: Role,
    now: datetime,
) -> dict[str, Any]:
    """Record a party's arrival at the test centre.

    Raises:
        AlreadyDone: This party already checked in.
        PreconditionError: Booking not active, called off, or window closed.
    """
    booking = get_booking_or_raise(ledger, booking_id)
    window = check_in_window(booking.scheduled_start, now)

    if booking.is_checked_in(role):
        raise AlreadyDone(
            "already checked in",
            result={"ok": True, "role": role.value, "window": window.to_payload()},
        )
    _require_active(booking)
    if booking.force_majeure_borrower_agreed_at and booking.force_majeure_owner_agreed_at:
        raise PreconditionError("booking was called off by force majeure")
    if not window.allowed:
        raise PreconditionError("check-in window is closed", window=window.to_payload())

    if not ledger.mark_checked_in(booking.id, role, now):
        raise AlreadyDone(
            "already checked in",
            result={"ok": True, "role": role.value, "window": window.to_payload()},
        )

    logger.info(
        "party checked in",
        extra={"extra_fields": safe_log_context(booking_id=booking.id, role=role.value)},
    )
    return {
        "ok": True,
        "role": role.value,
        "checked_in_at": now.isoformat(),
        "window": window.to_payload(),
    }


def confirm_complete(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    role: Role,
    now: datetime,
    deposit_choice: str | None = None,
) -> dict[str, Any]:
    """Record a party's confirmation that the test took place.

    Once both parties have confirmed, the booking is marked completed and
    settled as the happy path.
    """
    booking = get_booking_or_raise(ledger, booking_id)
    if deposit_choice is not None:
        if role is not Role.OWNER:
            raise BookingValidationError("only the owner chooses what happens to the deposit")
        _validate_choice(deposit_choice)

    if booking.settled:
        return {
            "completed": booking.completed,
            "settlement": SettlementService(ledger, gateway, clock=lambda: now)
            .settle(booking.id)
            .to_payload(),
        }
    _require_active(booking)
    if booking.needs_review:
        raise PreconditionError("booking is awaiting admin review")

    window = completion_window(
        booking.scheduled_start, booking.borrower_checked_in, booking.owner_checked_in, now
    )
    if not window.allowed:
        raise PreconditionError("completion is not allowed yet", window=window.to_payload())

    updated = ledger.record_completion_confirmation(booking.id, role, deposit_choice)
    if updated is None:
        raise PreconditionError("booking changed state, reload and retry")

    if not (updated.borrower_confirmed_complete and updated.owner_confirmed_complete):
        return {"completed": False, "waiting_for": role.other.value}

    ledger.mark_completed(booking.id)
    record_audit(ledger, booking.id, action="completed", actor_role=role.value)
    result = SettlementService(ledger, gateway, clock=lambda: now).settle(booking.id)
    return {"completed": True, "settlement": result.to_payload()}


def claim_no_show(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    claimant_role: Role,
    now: datetime,
    claimant_user_id: str | None = None,
) -> dict[str, Any]:
    """The party who showed up reports the other as absent, then settles.

    Returns:
        {"scenario", "amounts", ...} from the settlement.
    """
    booking = get_booking_or_raise(ledger, booking_id)
    if booking.settled:
        return SettlementService(ledger, gateway, clock=lambda: now).settle(booking.id).to_payload()
    _require_active(booking)
    if booking.needs_review:
        raise PreconditionError("booking is awaiting admin review")

    window = no_show_window(
        booking.scheduled_start,
        booking.is_checked_in(claimant_role),
        booking.is_checked_in(claimant_role.other),
        now,
    )
    if not window.allowed:
        raise PreconditionError("no-show claim is not allowed", window=window.to_payload())

    reason = f"{claimant_role.other.value}_no_show"
    if ledger.update_review_flags(booking.id, review_reason=reason) is None:
        raise PreconditionError("booking changed state, reload and retry")

    record_audit(
        ledger,
        booking.id,
        action=f"no_show_claimed:{reason}",
        actor_role=claimant_role.value,
        actor_user_id=claimant_user_id,
    )
    result = SettlementService(ledger, gateway, clock=lambda: now).settle(
        booking.id, actor_role=claimant_role.value, actor_user_id=claimant_user_id
    )
    return result.to_payload()


def report_examiner_refusal(
    ledger: LedgerStore,
    booking_id: str,
    *,
    role: Role,
    reason: str,
    now: datetime,
    note: str | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Flag a booking for admin review after the examiner refused the test.

    ``motorcycle_issue`` also marks the bike invalid, which settles as owner
    fault once an admin approves.
    """
    if reason not in EXAMINER_REFUSAL_REASONS:
        raise BookingValidationError(f"reason must be one of {EXAMINER_REFUSAL_REASONS}")

    booking = get_booking_or_raise(ledger, booking_id)
    _require_active(booking)
    if booking.completed:
        raise PreconditionError("booking is already completed")
    if booking.needs_review:
        raise AlreadyDone("booking is already under review", result={"needs_review": True})

    window = examiner_refusal_window(
        booking.scheduled_start, booking.borrower_checked_in, booking.owner_checked_in, now
    )
    if not window.allowed:
        raise PreconditionError("examiner refusal cannot be reported now", window=window.to_payload())

    flags: dict[str, Any] = {
        "needs_review": True,
        "review_reason": EXAMINER_REFUSAL,
        "review_note": f"{reason}: {note}" if note else reason,
    }
    if reason == "motorcycle_issue":
        flags["bike_invalid"] = True
    if ledger.update_review_flags(booking.id, **flags) is None:
        raise PreconditionError("booking changed state, reload and retry")

    record_audit(
        ledger,
        booking.id,
        action="examiner_refusal_reported",
        actor_role=role.value,
        actor_user_id=user_id,
        note=reason,
    )
    logger.info(
        "examiner refusal flagged for review",
        extra={"extra_fields": safe_log_context(booking_id=booking.id, reason=reason)},
    )
    return {"needs_review": True, "reason": reason, "bike_invalid": reason == "motorcycle_issue"}


def set_owner_deposit_choice(ledger: LedgerStore, booking_id: str, *, choice: str) -> dict[str, Any]:
    """Owner picks whether the deposit comes back as credit (keep) or refund."""
    _validate_choice(choice)
    booking = get_booking_or_raise(ledger, booking_id)
    if booking.settled:
        raise PreconditionError("deposit choice is locked once the booking is settled")
    if not ledger.set_owner_deposit_choice(booking.id, choice):
        raise PreconditionError("deposit choice is locked once the booking is settled")
    return {"owner_deposit_choice": choice}


def _validate_choice(choice: str) -> None:
    if choice not in {c.value for c in DepositChoice}:
        raise BookingValidationError("deposit choice must be 'keep' or 'refund'")
