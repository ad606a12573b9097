"""Owner acceptance (deposit payment) and expiry of unaccepted requests.

Acceptance is the owner paying the deposit, from credit when they hold
enough, otherwise through a gateway checkout. Requests the owner does not
accept before the acceptance deadline are cancelled by a scheduled sweep.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from borrowmybike.domain.bookings import get_booking_or_raise, start_checkout
from borrowmybike.domain.cancellation import cancel_booking
from borrowmybike.domain.credits import CREDIT_PREFERENCE, apply_credit_payment, available_balance
from borrowmybike.domain.errors import AlreadyDone, InsufficientCreditError, PreconditionError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import CancelledBy, Role
from borrowmybike.domain.money import OWNER_DEPOSIT_CENTS
from borrowmybike.domain.windows import acceptance_window
from borrowmybike.observability.correlation import correlation_scope
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


def accept(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    booking_id: str,
    *,
    now: datetime,
    use_credit: bool = True,
) -> dict[str, Any]:
    """Owner accepts a booking request by paying the deposit.

    Args:
        ledger: Ledger store.
        gateway: Payment gateway for the deposit checkout.
        booking_id: Booking UUID.
        now: Current time, checked against the acceptance window.
        use_credit: Pay from the owner's credits when they cover the deposit.

    Returns:
        {"status": "accepted", "checkout_url": None, "credit_applied": int}
        or {"status": "checkout_required", "checkout_url": str, "credit_applied": 0}

    Raises:
        AlreadyDone: Deposit already paid.
        PreconditionError: Cancelled, borrower unpaid, or window closed.
        ExternalGatewayError: Checkout could not be created.
    """
    booking = get_booking_or_raise(ledger, booking_id)

    if booking.owner_deposit_paid:
        raise AlreadyDone("booking already accepted", result={"status": "already_accepted"})
    if booking.cancelled:
        raise PreconditionError("booking is cancelled")
    if not booking.borrower_paid:
        raise PreconditionError("borrower payment is not confirmed yet")

    window = acceptance_window(booking.created_at, booking.scheduled_start, now)
    if not window.allowed:
        raise PreconditionError("acceptance window has closed", window=window.to_payload())

    if use_credit:
        balance = available_balance(ledger, booking.owner_id, now, CREDIT_PREFERENCE[Role.OWNER])
        if balance >= OWNER_DEPOSIT_CENTS:
            try:
                applied = apply_credit_payment(
                    ledger,
                    booking=booking,
                    role=Role.OWNER,
                    amount_cents=OWNER_DEPOSIT_CENTS,
                    now=now,
                )
            except InsufficientCreditError:
                # Spent concurrently since the balance check
                logger.info(
                    "owner credit no longer sufficient, falling back to checkout",
                    extra={"extra_fields": safe_log_context(booking_id=booking.id)},
                )
            else:
                logger.info(
                    "booking accepted with credit",
                    extra={"extra_fields": safe_log_context(booking_id=booking.id, applied=applied)},
                )
                return {"status": "accepted", "checkout_url": None, "credit_applied": applied}

    session = start_checkout(ledger, gateway, booking=booking, role=Role.OWNER)
    return {
        "status": "checkout_required",
        "checkout_url": session["url"],
        "credit_applied": 0,
        "window": window.to_payload(),
    }


def expire_unaccepted(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    *,
    now: datetime,
    limit: int = 100,
) -> dict[str, Any]:
    """Cancel every request whose acceptance deadline has passed.

    One booking failing does not stop the sweep; it is logged and picked
    up again on the next run.
    """
    candidates = ledger.list_expirable_bookings(now, limit)
    expired: list[str] = []
    failed: list[str] = []

    for booking in candidates:
        with correlation_scope():
            if acceptance_window(booking.created_at, booking.scheduled_start, now).allowed:
                continue
            try:
                cancel_booking(
                    ledger,
                    gateway,
                    booking.id,
                    cancelled_by=CancelledBy.SYSTEM_EXPIRED,
                    now=now,
                )
            except PreconditionError as exc:
                logger.info(
                    "booking no longer expirable",
                    extra={
                        "extra_fields": safe_log_context(booking_id=booking.id, reason=str(exc))
                    },
                )
                continue
            except Exception as exc:
                logger.error(
                    "failed to expire booking",
                    extra={
                        "extra_fields": safe_log_context(booking_id=booking.id, error=str(exc))
                    },
                )
                failed.append(booking.id)
                continue
            expired.append(booking.id)

    logger.info(
        "expiry sweep finished",
        extra={
            "extra_fields": safe_log_context(
                candidates=len(candidates), expired=len(expired), failed=len(failed)
            )
        },
    )
    return {"expired": expired, "failed": failed}
