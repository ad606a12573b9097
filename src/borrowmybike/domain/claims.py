"""Claim rows: at-most-once money legs.

Every money leg is a payment row unique per (booking_id, type). Internal
legs (platform income, payouts) are written directly in their final
status; the insert itself is the claim. External legs (gateway refunds)
run a narrow two-phase commit:

    insert ``initiated`` -> call gateway -> flip to ``succeeded``

A refund whose gateway call definitely failed has its row removed so the
caller can fall back to a credit. A refund whose outcome is unknown keeps
its ``initiated`` row; the next attempt re-calls the gateway with the same
idempotency key and the gateway returns the original refund.
"""

from __future__ import annotations

from dataclasses import dataclass

from borrowmybike.domain.errors import ExternalGatewayError, LedgerIntegrityError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import (
    REFUND_PAYMENT_TYPE,
    Booking,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Role,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class RefundOutcome:
    payment: Payment
    refund_reference: str | None
    replayed: bool


def refund_idempotency_key(booking_id: str, payment_id: str, amount_cents: int) -> str:
    return f"refund:{booking_id}:{payment_id}:{amount_cents}"


def record_ledger_entry(
    ledger: LedgerStore,
    *,
    booking: Booking,
    payment_type: PaymentType,
    user_id: str | None,
    amount_cents: int,
    status: PaymentStatus,
) -> Payment:
    """Record an internal leg (platform income, payout due). Idempotent."""
    row, created = ledger.claim_payment(
        booking_id=booking.id,
        user_id=user_id,
        payment_type=payment_type.value,
        method=PaymentMethod.LEDGER.value,
        status=status.value,
        amount_cents=amount_cents,
    )
    if not created and row.amount_cents != amount_cents:
        raise LedgerIntegrityError(
            f"{payment_type.value} for booking {booking.id} already recorded "
            f"with {row.amount_cents}, expected {amount_cents}"
        )
    return row


def refund_with_claim(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    *,
    booking: Booking,
    role: Role,
    source: Payment,
    amount_cents: int,
    reason: str,
) -> RefundOutcome:
    """Refund ``amount_cents`` of a gateway payment, exactly once.

    Raises:
        ExternalGatewayError: The gateway refused. If not ``ambiguous`` the
            claim row has been removed and nothing was refunded.
        LedgerIntegrityError: The refund went through but could not be recorded.
    """
    refund_type = REFUND_PAYMENT_TYPE[role].value
    row, created = ledger.claim_payment(
        booking_id=booking.id,
        user_id=booking.user_id_for(role),
        payment_type=refund_type,
        method=PaymentMethod.GATEWAY.value,
        status=PaymentStatus.INITIATED.value,
        amount_cents=amount_cents,
        gateway_reference=source.gateway_reference,
    )
    if not created and row.status == PaymentStatus.SUCCEEDED.value:
        return RefundOutcome(payment=row, refund_reference=row.refund_reference, replayed=True)

    # Resumed rows keep the amount they were claimed with
    key = refund_idempotency_key(booking.id, row.id, row.amount_cents)
    try:
        refund = gateway.refund(
            payment_reference=source.gateway_reference or "",
            amount_cents=row.amount_cents,
            idempotency_key=key,
            metadata={"booking_id": booking.id, "payment_type": refund_type, "reason": reason},
        )
    except ExternalGatewayError as exc:
        if exc.ambiguous:
            logger.error(
                "refund outcome unknown, claim kept for retry",
                extra={
                    "extra_fields": safe_log_context(
                        booking_id=booking.id, payment_id=row.id, error=str(exc)
                    )
                },
            )
        else:
            ledger.discard_payment(row.id)
            logger.warning(
                "refund rejected by gateway, claim released",
                extra={
                    "extra_fields": safe_log_context(
                        booking_id=booking.id, payment_id=row.id, error=str(exc)
                    )
                },
            )
        raise

    refund_reference = refund.get("refund_id")
    try:
        ledger.complete_payment(
            row.id,
            status=PaymentStatus.SUCCEEDED.value,
            refund_reference=refund_reference,
        )
    except Exception as exc:
        logger.error(
            "refund issued but not recorded",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking.id,
                    payment_id=row.id,
                    refund_reference=refund_reference,
                    error=str(exc),
                )
            },
        )
        raise LedgerIntegrityError(
            f"refund {refund_reference} for booking {booking.id} issued but not recorded"
        ) from exc

    refreshed = ledger.get_payment(row.id) or row
    logger.info(
        "refund recorded",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                payment_id=row.id,
                amount_cents=row.amount_cents,
                resumed=not created,
            )
        },
    )
    return RefundOutcome(payment=refreshed, refund_reference=refund_reference, replayed=False)
