"""Returning a party's money and summarizing a booking's ledger.

``return_funds`` is the single path by which a party gets money back, for
settlements and cancellations alike: refund the gateway-charged portion
where allowed, credit everything else. A refused refund becomes a credit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from borrowmybike.domain.claims import refund_with_claim
from borrowmybike.domain.errors import ExternalGatewayError
from borrowmybike.domain.ledger import Amounts, LedgerStore, PaymentGateway
from borrowmybike.domain.models import (
    CREDIT_PAYMENT_TYPE,
    GATEWAY_PAYMENT_TYPE,
    REFUND_PAYMENT_TYPE,
    Booking,
    Payment,
    PaymentStatus,
    PaymentType,
    Role,
)
from borrowmybike.domain.money import CREDIT_VALIDITY
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

_PAYOUT_TYPES = {PaymentType.OWNER_PAYOUT.value, PaymentType.BORROWER_COMPENSATION.value}
_REFUND_TYPES = {t.value for t in REFUND_PAYMENT_TYPE.values()}


@dataclass(frozen=True)
class PartyPayment:
    """What a party actually paid into a booking."""

    gateway: Payment | None
    credit_cents: int

    @property
    def gateway_cents(self) -> int:
        return self.gateway.amount_cents if self.gateway else 0

    @property
    def total_cents(self) -> int:
        return self.gateway_cents + self.credit_cents


def party_payment(ledger: LedgerStore, booking_id: str, role: Role) -> PartyPayment:
    gateway = ledger.find_payment(booking_id, GATEWAY_PAYMENT_TYPE[role].value)
    if gateway is not None and gateway.status != PaymentStatus.SUCCEEDED.value:
        gateway = None
    credit = ledger.find_payment(booking_id, CREDIT_PAYMENT_TYPE[role].value)
    credit_cents = (
        credit.amount_cents
        if credit is not None and credit.status == PaymentStatus.SUCCEEDED.value
        else 0
    )
    return PartyPayment(gateway=gateway, credit_cents=credit_cents)


def return_funds(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    *,
    booking: Booking,
    role: Role,
    amount_cents: int,
    credit_type: str,
    reason: str,
    now: datetime,
    allow_refund: bool = True,
) -> Amounts:
    """Give ``amount_cents`` back to one party. Idempotent per (booking, party).

    The credit is always the last write of this leg, so an existing credit
    means the leg is complete; an existing succeeded refund means only the
    credit part (if any) is left.

    Raises:
        ExternalGatewayError: Only when the refund outcome is unknown; the
            leg must be retried, not converted to credit.
    """
    if amount_cents <= 0:
        return Amounts()

    user_id = booking.user_id_for(role)
    refund_row = ledger.find_payment(booking.id, REFUND_PAYMENT_TYPE[role].value)
    refunded = (
        refund_row.amount_cents
        if refund_row is not None and refund_row.status == PaymentStatus.SUCCEEDED.value
        else 0
    )

    existing_credit = ledger.find_issued_credit(booking.id, user_id, credit_type)
    if existing_credit is not None:
        return Amounts(refunded=refunded, credited=existing_credit.amount_cents)

    if refunded == 0 and allow_refund:
        paid = party_payment(ledger, booking.id, role)
        refundable = min(amount_cents, paid.gateway_cents)
        if paid.gateway is not None and not paid.gateway.gateway_reference:
            logger.warning(
                "gateway reference missing, returning as credit",
                extra={"extra_fields": safe_log_context(booking_id=booking.id, role=role.value)},
            )
            refundable = 0
        if refundable > 0:
            try:
                outcome = refund_with_claim(
                    ledger,
                    gateway,
                    booking=booking,
                    role=role,
                    source=paid.gateway,
                    amount_cents=refundable,
                    reason=reason,
                )
                refunded = outcome.payment.amount_cents
            except ExternalGatewayError as exc:
                if exc.ambiguous:
                    raise
                # Refund failure degrades to credit

    credited = amount_cents - refunded
    if credited > 0:
        ledger.issue_credit(
            user_id=user_id,
            credit_type=credit_type,
            amount_cents=credited,
            origin_booking_id=booking.id,
            reason=reason,
            expires_at=now + CREDIT_VALIDITY,
        )

    logger.info(
        "funds returned",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                role=role.value,
                refunded_cents=refunded,
                credited_cents=max(credited, 0),
                reason=reason,
            )
        },
    )
    return Amounts(refunded=refunded, credited=max(credited, 0))


def ledger_summary(ledger: LedgerStore, booking_id: str) -> Amounts:
    """Totals of every outbound leg recorded against a booking."""
    refunded = paid_out = platform_income = 0
    for payment in ledger.list_payments(booking_id):
        if payment.type in _REFUND_TYPES and payment.status == PaymentStatus.SUCCEEDED.value:
            refunded += payment.amount_cents
        elif payment.type in _PAYOUT_TYPES and payment.status in (
            PaymentStatus.PAYOUT_DUE.value,
            PaymentStatus.PAID.value,
        ):
            paid_out += payment.amount_cents
        elif payment.type == PaymentType.PLATFORM_INCOME.value:
            platform_income += payment.amount_cents

    credited = sum(
        c.amount_cents
        for c in ledger.list_booking_credits(booking_id)
        if c.origin_booking_id == booking_id and c.split_from_credit_id is None
    )
    return Amounts(
        refunded=refunded,
        credited=credited,
        paid_out=paid_out,
        platform_income=platform_income,
    )
