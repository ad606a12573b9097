"""Booking creation, lookup and the operator/UI ledger view."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from borrowmybike.domain.credits import apply_credit_payment
from borrowmybike.domain.errors import (
    AlreadyDone,
    BookingNotFoundError,
    BookingValidationError,
    ForbiddenError,
    PreconditionError,
)
from borrowmybike.domain.funds import ledger_summary, party_payment
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import GATEWAY_PAYMENT_TYPE, Booking, Role
from borrowmybike.domain.money import BOOKING_FEE_CENTS, CURRENCY, OWNER_DEPOSIT_CENTS
from borrowmybike.domain.windows import (
    ACCEPTANCE_CUTOFF_BEFORE_START,
    acceptance_window,
    check_in_window,
    completion_window,
    force_majeure_window,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

PAYMENT_AMOUNT = {Role.BORROWER: BOOKING_FEE_CENTS, Role.OWNER: OWNER_DEPOSIT_CENTS}


def get_booking_or_raise(ledger: LedgerStore, booking_id: str) -> Booking:
    booking = ledger.get_booking(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"Booking {booking_id} not found")
    return booking


def require_party(booking: Booking, user_id: str, role: Role | None = None) -> Role:
    """Return the caller's role on the booking, optionally requiring one."""
    caller_role = booking.role_of(user_id)
    if caller_role is None:
        raise ForbiddenError("caller is not a party to this booking")
    if role is not None and caller_role is not role:
        raise ForbiddenError(f"only the {role.value} may do this")
    return caller_role


def create_booking(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    *,
    bike_id: str,
    owner_id: str,
    borrower_id: str,
    scheduled_start: datetime,
    now: datetime,
    duration_minutes: int = 60,
    use_credit: bool = True,
) -> dict[str, Any]:
    """Reserve a slot and collect the borrower's booking fee.

    The slot is reserved by the database (race-free); credits are applied
    first and any remainder goes through a gateway checkout.

    Args:
        ledger: Ledger store.
        gateway: Payment gateway for the fee checkout.
        bike_id: Bike being borrowed.
        owner_id: Bike owner's user id.
        borrower_id: Borrower's user id.
        scheduled_start: Road test start (aware datetime).
        now: Current time.
        duration_minutes: Slot length.
        use_credit: Apply the borrower's credits before checkout.

    Returns:
        {"booking_id", "status", "checkout_url", "credit_applied"}

    Raises:
        BookingValidationError: Bad parties, duration or start time.
        SlotUnavailableError: The bike is already booked for that slot.
    """
    if not bike_id or not owner_id or not borrower_id:
        raise BookingValidationError("bike_id, owner_id and borrower_id are required")
    if owner_id == borrower_id:
        raise BookingValidationError("owners cannot book their own bike")
    if duration_minutes <= 0:
        raise BookingValidationError("duration_minutes must be positive")
    if scheduled_start - ACCEPTANCE_CUTOFF_BEFORE_START <= now:
        raise BookingValidationError("scheduled_start is too soon to be accepted")

    booking = ledger.create_pending_booking(
        bike_id=bike_id,
        borrower_id=borrower_id,
        owner_id=owner_id,
        scheduled_start=scheduled_start,
        duration_minutes=duration_minutes,
        now=now,
    )
    logger.info(
        "booking created",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id, bike_id=bike_id, scheduled_start=scheduled_start.isoformat()
            )
        },
    )

    credit_applied = 0
    if use_credit:
        credit_applied = apply_credit_payment(
            ledger,
            booking=booking,
            role=Role.BORROWER,
            amount_cents=BOOKING_FEE_CENTS,
            now=now,
            allow_partial=True,
        )

    remaining = BOOKING_FEE_CENTS - credit_applied
    if remaining == 0:
        return {
            "booking_id": booking.id,
            "status": "paid",
            "credit_applied": credit_applied,
            "checkout_url": None,
        }

    session = start_checkout(ledger, gateway, booking=booking, role=Role.BORROWER)
    return {
        "booking_id": booking.id,
        "status": "checkout_required",
        "credit_applied": credit_applied,
        "checkout_url": session["url"],
    }


def start_checkout(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    *,
    booking: Booking,
    role: Role,
) -> dict[str, Any]:
    """Open (or reopen) a gateway checkout for what a party still owes.

    Raises:
        AlreadyDone: The party has already paid.
        ExternalGatewayError: The gateway could not create the session.
    """
    paid = booking.borrower_paid if role is Role.BORROWER else booking.owner_deposit_paid
    if paid:
        raise AlreadyDone("payment already confirmed", result={"status": "already_paid"})
    if booking.cancelled:
        raise PreconditionError("booking is cancelled")

    already = party_payment(ledger, booking.id, role)
    remaining = PAYMENT_AMOUNT[role] - already.total_cents
    if remaining <= 0:
        raise PreconditionError("payment recorded but booking not yet marked paid")

    payment_type = GATEWAY_PAYMENT_TYPE[role].value
    return gateway.create_checkout_session(
        amount_cents=remaining,
        currency=CURRENCY,
        idempotency_key=f"booking:{booking.id}:{payment_type}:checkout:{remaining}",
        metadata={"booking_id": booking.id, "payment_type": payment_type},
    )


def pay_with_credit(
    ledger: LedgerStore,
    booking_id: str,
    *,
    role: Role,
    now: datetime,
) -> dict[str, Any]:
    """Pay a party's whole booking fee or deposit from their credits.

    Returns:
        {"status": "paid", "amount": cents applied}

    Raises:
        AlreadyDone: The party has already paid.
        PreconditionError: Cancelled, out of order, window closed, or
            credit was already applied toward part of this payment.
        InsufficientCreditError: Credits do not cover the amount.
    """
    booking = get_booking_or_raise(ledger, booking_id)
    paid = booking.borrower_paid if role is Role.BORROWER else booking.owner_deposit_paid
    if paid:
        raise AlreadyDone("payment already confirmed", result={"status": "already_paid"})
    if booking.cancelled:
        raise PreconditionError("booking is cancelled")

    if role is Role.OWNER:
        if not booking.borrower_paid:
            raise PreconditionError("borrower payment is not confirmed yet")
        window = acceptance_window(booking.created_at, booking.scheduled_start, now)
        if not window.allowed:
            raise PreconditionError("acceptance window has closed", window=window.to_payload())

    if party_payment(ledger, booking.id, role).credit_cents:
        raise PreconditionError("credit already applied; pay the remainder by checkout")

    applied = apply_credit_payment(
        ledger,
        booking=booking,
        role=role,
        amount_cents=PAYMENT_AMOUNT[role],
        now=now,
    )
    logger.info(
        "payment made from credit",
        extra={"extra_fields": safe_log_context(booking_id=booking.id, role=role.value, amount=applied)},
    )
    return {"status": "paid", "amount": applied}


def booking_windows(booking: Booking, now: datetime) -> dict[str, Any]:
    """Current action windows, for display."""
    return {
        "acceptance": acceptance_window(booking.created_at, booking.scheduled_start, now).to_payload(),
        "check_in": check_in_window(booking.scheduled_start, now).to_payload(),
        "completion": completion_window(
            booking.scheduled_start, booking.borrower_checked_in, booking.owner_checked_in, now
        ).to_payload(),
        "force_majeure": force_majeure_window(
            booking.scheduled_start, booking.borrower_checked_in, booking.owner_checked_in, now
        ).to_payload(),
    }


def get_booking_ledger(ledger: LedgerStore, booking_id: str, now: datetime) -> dict[str, Any]:
    """Booking plus every payment and credit touching it."""
    booking = get_booking_or_raise(ledger, booking_id)
    return {
        "booking": booking.to_payload(),
        "payments": [p.to_payload() for p in ledger.list_payments(booking_id)],
        "credits": [c.to_payload() for c in ledger.list_booking_credits(booking_id)],
        "amounts": ledger_summary(ledger, booking_id).to_payload(),
        "windows": booking_windows(booking, now),
    }
