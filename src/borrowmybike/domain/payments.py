"""Inbound gateway payments confirmed by webhook.

Recording the payment row and flipping the booking's paid flag are both
idempotent, so a redelivered event converges on the same state. A
payment that lands on a booking which was cancelled meanwhile is refunded
to the payer in full.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from borrowmybike.domain.claims import refund_with_claim
from borrowmybike.domain.errors import BookingValidationError, PreconditionError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import (
    GATEWAY_PAYMENT_TYPE,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Role,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

_ROLE_BY_PAYMENT_TYPE = {t.value: role for role, t in GATEWAY_PAYMENT_TYPE.items()}


@dataclass(frozen=True)
class GatewayPayment:
    """A confirmed gateway charge, as extracted from a webhook event."""

    booking_id: str
    payment_type: str
    amount_cents: int
    currency: str
    gateway_reference: str


def handle_payment_succeeded(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    payment: GatewayPayment,
) -> dict[str, Any]:
    """Record a confirmed charge and mark the payer's side as paid.

    Args:
        ledger: Ledger store.
        gateway: Payment gateway, for refunding charges on cancelled bookings.
        payment: Charge extracted from a verified webhook event.

    Returns:
        {"status": "recorded" | "ignored" | "refunded", ...}

    Raises:
        BookingValidationError: Unknown payment type.
        PreconditionError: Deposit confirmed before the booking fee; the
            event should be redelivered later.
    """
    role = _ROLE_BY_PAYMENT_TYPE.get(payment.payment_type)
    if role is None:
        raise BookingValidationError(f"unsupported payment_type: {payment.payment_type}")

    booking = ledger.get_booking(payment.booking_id)
    if booking is None:
        logger.warning(
            "payment for unknown booking ignored",
            extra={"extra_fields": safe_log_context(booking_id=payment.booking_id)},
        )
        return {"status": "ignored", "reason": "booking_not_found"}

    row, created = ledger.claim_payment(
        booking_id=booking.id,
        user_id=booking.user_id_for(role),
        payment_type=payment.payment_type,
        method=PaymentMethod.GATEWAY.value,
        status=PaymentStatus.SUCCEEDED.value,
        amount_cents=payment.amount_cents,
        gateway_reference=payment.gateway_reference,
    )
    if not created and row.gateway_reference != payment.gateway_reference:
        logger.error(
            "second gateway charge for the same booking payment",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking.id,
                    payment_type=payment.payment_type,
                    payment_id=row.id,
                )
            },
        )

    if booking.cancelled:
        # Refund the whole charge; a rejected refund is retried on redelivery
        outcome = refund_with_claim(
            ledger,
            gateway,
            booking=booking,
            role=role,
            source=row,
            amount_cents=row.amount_cents,
            reason="payment received after cancellation",
        )
        logger.info(
            "payment on cancelled booking refunded",
            extra={"extra_fields": safe_log_context(booking_id=booking.id, role=role.value)},
        )
        return {
            "status": "refunded",
            "booking_id": booking.id,
            "refund_reference": outcome.refund_reference,
        }

    if not ledger.mark_paid(booking.id, role):
        latest = ledger.get_booking(booking.id)
        already = latest is not None and (
            latest.borrower_paid if role is Role.BORROWER else latest.owner_deposit_paid
        )
        if not already:
            raise PreconditionError(
                f"cannot mark {payment.payment_type} paid on booking {booking.id} yet"
            )

    logger.info(
        "gateway payment recorded",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                payment_type=payment.payment_type,
                amount_cents=payment.amount_cents,
                duplicate=not created,
            )
        },
    )
    return {"status": "recorded", "booking_id": booking.id, "payment_type": payment.payment_type}


def is_booking_payment(payment_type: str | None) -> bool:
    return payment_type in (
        PaymentType.BORROWER_BOOKING_FEE.value,
        PaymentType.OWNER_DEPOSIT.value,
    )
