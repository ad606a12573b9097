"""Credit consumption and credit-funded payments.

Credits are spent oldest-expiry first within each party's preferred credit
types. A credit is never partially mutated: it is marked used in full and
any leftover is reissued as a new available credit that points back at it.
"""

from __future__ import annotations

from datetime import datetime

from borrowmybike.domain.errors import AlreadyDone, InsufficientCreditError, LedgerIntegrityError
from borrowmybike.domain.ledger import LedgerStore
from borrowmybike.domain.models import (
    CREDIT_PAYMENT_TYPE,
    Booking,
    Credit,
    CreditType,
    PaymentMethod,
    PaymentStatus,
    Role,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Which credit types each party may spend, in order of preference
CREDIT_PREFERENCE: dict[Role, tuple[str, ...]] = {
    Role.BORROWER: (
        CreditType.REBOOK_CREDIT.value,
        CreditType.CANCEL_REFUND_CREDIT.value,
    ),
    Role.OWNER: (
        CreditType.OWNER_DEPOSIT_HELD.value,
        CreditType.REBOOK_CREDIT.value,
        CreditType.CANCEL_REFUND_CREDIT.value,
    ),
}


def plan_consumption(
    credits: list[Credit],
    amount_cents: int,
    *,
    now: datetime,
    credit_types: tuple[str, ...] | None = None,
) -> list[tuple[Credit, int]]:
    """Pick credits to cover ``amount_cents``.

    Returns (credit, amount taken) pairs. Only the last pair can take less
    than the credit's full amount; that credit is the one to split.
    Expired, used and non-matching credits are skipped.
    """
    order = {t: i for i, t in enumerate(credit_types or ())}
    usable = [
        c for c in credits
        if c.is_usable(now) and (credit_types is None or c.credit_type in order)
    ]
    usable.sort(key=lambda c: (order.get(c.credit_type, 0), c.expires_at, c.created_at or c.expires_at))

    plan: list[tuple[Credit, int]] = []
    remaining = amount_cents
    for credit in usable:
        if remaining <= 0:
            break
        take = min(credit.amount_cents, remaining)
        plan.append((credit, take))
        remaining -= take
    return plan


def planned_total(plan: list[tuple[Credit, int]]) -> int:
    return sum(take for _, take in plan)


def available_balance(
    ledger: LedgerStore, user_id: str, now: datetime, credit_types: tuple[str, ...] | None = None
) -> int:
    return sum(c.amount_cents for c in ledger.list_usable_credits(user_id, now, credit_types))


def apply_credit_payment(
    ledger: LedgerStore,
    *,
    booking: Booking,
    role: Role,
    amount_cents: int,
    now: datetime,
    allow_partial: bool = False,
) -> int:
    """Pay (part of) a party's booking payment from their credits.

    Claim-before-spend: an ``initiated`` payment row is inserted first, the
    credits are consumed, then the row is flipped to ``succeeded``. If the
    credits do not cover the amount the row is removed and nothing is spent.

    Args:
        ledger: Ledger store.
        booking: Booking being paid.
        role: Paying party.
        amount_cents: Amount owed.
        now: Current time; expired credits are skipped.
        allow_partial: Spend what is available even if it falls short.

    Returns:
        Cents applied. Zero when ``allow_partial`` and no credit was usable.

    Raises:
        AlreadyDone: Credits were already applied to this booking payment.
        InsufficientCreditError: Not enough credit and ``allow_partial`` is False.
        LedgerIntegrityError: Credits were consumed but the row could not be flipped.
    """
    user_id = booking.user_id_for(role)
    payment_type = CREDIT_PAYMENT_TYPE[role].value

    row, created = ledger.claim_payment(
        booking_id=booking.id,
        user_id=user_id,
        payment_type=payment_type,
        method=PaymentMethod.CREDIT.value,
        status=PaymentStatus.INITIATED.value,
        amount_cents=amount_cents,
    )
    if not created and row.status == PaymentStatus.SUCCEEDED.value:
        raise AlreadyDone(
            "credit payment already applied",
            result={"status": "already_paid", "credit_applied": row.amount_cents},
        )

    # An existing initiated row is a crashed or concurrent attempt; the store
    # serializes on the row and returns the earlier consumption if there was one.
    try:
        consumption = ledger.consume_credits(
            claim_payment_id=row.id,
            user_id=user_id,
            booking_id=booking.id,
            amount_cents=amount_cents,
            now=now,
            credit_types=CREDIT_PREFERENCE[role],
            allow_partial=allow_partial,
        )
    except InsufficientCreditError:
        ledger.discard_payment(row.id)
        raise

    if consumption.applied_cents == 0:
        ledger.discard_payment(row.id)
        return 0

    try:
        flipped = ledger.complete_payment(
            row.id,
            status=PaymentStatus.SUCCEEDED.value,
            amount_cents=consumption.applied_cents,
        )
    except Exception as exc:
        logger.error(
            "credits consumed but payment row not recorded",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking.id,
                    payment_id=row.id,
                    applied_cents=consumption.applied_cents,
                    error=str(exc),
                )
            },
        )
        raise LedgerIntegrityError(
            f"credits applied to booking {booking.id} but payment {row.id} not recorded"
        ) from exc

    if not flipped:
        logger.info(
            "credit payment already flipped by concurrent request",
            extra={"extra_fields": safe_log_context(booking_id=booking.id, payment_id=row.id)},
        )

    if consumption.applied_cents >= amount_cents:
        ledger.mark_paid(booking.id, role)

    logger.info(
        "credit payment applied",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                role=role.value,
                applied_cents=consumption.applied_cents,
                credits_used=len(consumption.used_credit_ids),
                remainder_credit_id=consumption.remainder_credit_id,
            )
        },
    )
    return consumption.applied_cents
