"""Booking cancellation: guarded claim, then idempotent money legs.

Flow: validate -> flip ``cancelled`` (guarded) -> move money -> audit.

The outcome is derived only from what is stored on the booking
(``cancelled_by``, ``cancelled_at``, payment flags, which cannot change
once cancelled), so a retry or a crash recovery re-runs exactly the same
legs and every leg is idempotent.

    withdrawn   request cancelled before the owner accepted: borrower's
                payment returned in full
    expired     acceptance deadline passed: borrower's payment returned
                as rebook credit
    early       more than 5 days out: canceller gets 75% back, platform
                keeps 25%, the other party's payment becomes rebook credit
    late        5 days or less: canceller forfeits everything to the
                platform, the other party's payment becomes rebook credit
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from borrowmybike.domain.audit import SYSTEM_ACTOR, record_audit
from borrowmybike.domain.bookings import PAYMENT_AMOUNT, get_booking_or_raise
from borrowmybike.domain.claims import record_ledger_entry
from borrowmybike.domain.errors import (
    PreconditionError,
    SettlementIncompleteError,
)
from borrowmybike.domain.funds import party_payment, return_funds
from borrowmybike.domain.ledger import Amounts, LedgerStore, PaymentGateway
from borrowmybike.domain.models import (
    Booking,
    CancelledBy,
    CreditType,
    PaymentStatus,
    PaymentType,
    Role,
)
from borrowmybike.domain.money import early_cancellation_split
from borrowmybike.domain.settlement import StepRunner
from borrowmybike.domain.windows import CancellationTier, cancellation_tier
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


class CancellationOutcome(str, Enum):
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    EARLY = "cancelled_early"
    LATE = "cancelled_late"


def cancellation_outcome(booking: Booking) -> CancellationOutcome:
    """Outcome of a booking that has already been marked cancelled."""
    if booking.cancelled_by == CancelledBy.SYSTEM_EXPIRED.value:
        return CancellationOutcome.EXPIRED
    if not booking.owner_deposit_paid:
        return CancellationOutcome.WITHDRAWN
    if booking.cancelled_at is None:
        raise PreconditionError("cancelled booking has no cancellation time")
    tier = cancellation_tier(booking.scheduled_start, booking.cancelled_at)
    return CancellationOutcome.EARLY if tier is CancellationTier.EARLY else CancellationOutcome.LATE


def cancel_booking(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    cancelled_by: CancelledBy,
    now: datetime,
    actor_user_id: str | None = None,
) -> dict[str, Any]:
    """Cancel a booking and move its money.

    Cancelling an already-cancelled booking finishes any legs a previous
    attempt left undone and returns the same result with
    ``already_cancelled`` set.

    Args:
        ledger: Ledger store.
        gateway: Payment gateway used for refunds.
        booking_id: Booking UUID.
        cancelled_by: Borrower, owner, or the expiry sweep.
        now: Cancellation time; fixes the refund tier.
        actor_user_id: User who cancelled, for the audit row.

    Returns:
        {"booking_id", "outcome", "cancelled_by", "amounts", "already_cancelled"}

    Raises:
        PreconditionError: Completed, settled, started, or not cancellable by this party.
        SettlementIncompleteError: Cancelled, but a money leg failed.
    """
    booking = get_booking_or_raise(ledger, booking_id)

    if booking.cancelled:
        return _finish(ledger, gateway, booking, now, already_cancelled=True)

    if booking.settled or booking.completed:
        raise PreconditionError("completed bookings cannot be cancelled")

    if cancelled_by is CancelledBy.SYSTEM_EXPIRED:
        if booking.owner_deposit_paid:
            raise PreconditionError("accepted bookings do not expire")
    elif booking.owner_deposit_paid:
        if now >= booking.scheduled_start:
            raise PreconditionError("bookings cannot be cancelled after the scheduled start")
        if booking.borrower_checked_in or booking.owner_checked_in:
            raise PreconditionError("bookings cannot be cancelled after check-in")

    claimed = ledger.claim_cancellation(
        booking.id, cancelled_by.value, now, owner_deposit_paid=booking.owner_deposit_paid
    )
    booking = get_booking_or_raise(ledger, booking.id)
    if not claimed and not booking.cancelled:
        # Accepted or checked in since the read; the checks above must run again.
        return cancel_booking(
            ledger,
            gateway,
            booking.id,
            cancelled_by=cancelled_by,
            now=now,
            actor_user_id=actor_user_id,
        )
    if not claimed:
        logger.info(
            "booking already cancelled by concurrent request",
            extra={"extra_fields": safe_log_context(booking_id=booking.id)},
        )

    result = _finish(ledger, gateway, booking, now, already_cancelled=not claimed)

    if claimed:
        record_audit(
            ledger,
            booking.id,
            action=f"cancelled:{result['outcome']}",
            actor_role=cancelled_by.value if actor_user_id else SYSTEM_ACTOR,
            actor_user_id=actor_user_id,
            note=f"cancelled_by={cancelled_by.value}",
        )
    return result


def _finish(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking: Booking,
    now: datetime,
    *,
    already_cancelled: bool,
) -> dict[str, Any]:
    outcome = cancellation_outcome(booking)
    steps = StepRunner(booking.id)

    try:
        amounts = _LEGS[outcome](ledger, gateway, booking, steps, now)
    except SettlementIncompleteError as exc:
        logger.error(
            "cancellation incomplete",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking.id,
                    outcome=outcome.value,
                    completed_steps=",".join(exc.completed_steps),
                    failed_step=exc.failed_step,
                    cause=exc.cause,
                )
            },
        )
        raise

    logger.info(
        "cancellation processed",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                outcome=outcome.value,
                cancelled_by=booking.cancelled_by,
                refunded=amounts.refunded,
                credited=amounts.credited,
                platform_income=amounts.platform_income,
                already_cancelled=already_cancelled,
            )
        },
    )
    return {
        "booking_id": booking.id,
        "outcome": outcome.value,
        "cancelled_by": booking.cancelled_by,
        "amounts": amounts.to_payload(),
        "already_cancelled": already_cancelled,
    }


def _platform_income(ledger: LedgerStore, booking: Booking, steps: StepRunner, amount: int) -> Amounts:
    steps.run(
        "platform_income",
        record_ledger_entry,
        ledger,
        booking=booking,
        payment_type=PaymentType.PLATFORM_INCOME,
        user_id=None,
        amount_cents=amount,
        status=PaymentStatus.SUCCEEDED,
    )
    return Amounts(platform_income=amount)


def _return(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking: Booking,
    steps: StepRunner,
    now: datetime,
    *,
    role: Role,
    amount: int,
    credit_type: CreditType,
    allow_refund: bool,
    reason: str,
) -> Amounts:
    return steps.run(
        f"{role.value}_funds_returned",
        return_funds,
        ledger,
        gateway,
        booking=booking,
        role=role,
        amount_cents=amount,
        credit_type=credit_type.value,
        reason=reason,
        now=now,
        allow_refund=allow_refund,
    )


def _withdrawn(ledger, gateway, booking, steps, now) -> Amounts:
    paid = party_payment(ledger, booking.id, Role.BORROWER)
    return _return(
        ledger, gateway, booking, steps, now,
        role=Role.BORROWER,
        amount=paid.total_cents,
        credit_type=CreditType.CANCEL_REFUND_CREDIT,
        allow_refund=True,
        reason="request withdrawn before acceptance",
    )


def _expired(ledger, gateway, booking, steps, now) -> Amounts:
    paid = party_payment(ledger, booking.id, Role.BORROWER)
    return _return(
        ledger, gateway, booking, steps, now,
        role=Role.BORROWER,
        amount=paid.total_cents,
        credit_type=CreditType.REBOOK_CREDIT,
        allow_refund=False,
        reason="request expired without acceptance",
    )


def _rebook_other_party(ledger, gateway, booking, steps, now, canceller: Role) -> Amounts:
    other = canceller.other
    return _return(
        ledger, gateway, booking, steps, now,
        role=other,
        amount=PAYMENT_AMOUNT[other],
        credit_type=CreditType.REBOOK_CREDIT,
        allow_refund=False,
        reason="rebook credit after cancellation by the other party",
    )


def _early(ledger, gateway, booking, steps, now) -> Amounts:
    canceller = Role(booking.cancelled_by)
    returned, retained = early_cancellation_split(PAYMENT_AMOUNT[canceller])
    return (
        _return(
            ledger, gateway, booking, steps, now,
            role=canceller,
            amount=returned,
            credit_type=CreditType.CANCEL_REFUND_CREDIT,
            allow_refund=True,
            reason="early cancellation refund",
        )
        + _platform_income(ledger, booking, steps, retained)
        + _rebook_other_party(ledger, gateway, booking, steps, now, canceller)
    )


def _late(ledger, gateway, booking, steps, now) -> Amounts:
    canceller = Role(booking.cancelled_by)
    return _platform_income(ledger, booking, steps, PAYMENT_AMOUNT[canceller]) + _rebook_other_party(
        ledger, gateway, booking, steps, now, canceller
    )


_LEGS = {
    CancellationOutcome.WITHDRAWN: _withdrawn,
    CancellationOutcome.EXPIRED: _expired,
    CancellationOutcome.EARLY: _early,
    CancellationOutcome.LATE: _late,
}
