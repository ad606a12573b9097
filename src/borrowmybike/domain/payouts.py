"""Operational completion of payout-due ledger rows."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from borrowmybike.domain.audit import ADMIN_ACTOR, record_audit
from borrowmybike.domain.errors import AlreadyDone, PaymentNotFoundError, PreconditionError
from borrowmybike.domain.ledger import LedgerStore
from borrowmybike.domain.models import PaymentStatus, PaymentType

PAYOUT_TYPES = (PaymentType.OWNER_PAYOUT.value, PaymentType.BORROWER_COMPENSATION.value)


def mark_payout_paid(
    ledger: LedgerStore,
    payment_id: str,
    *,
    method: str,
    now: datetime,
    reference: str | None = None,
    admin_user_id: str | None = None,
) -> dict[str, Any]:
    """Record that a payout was transferred out-of-band.

    Args:
        ledger: Ledger store.
        payment_id: Payout payment row id.
        method: How the money was sent (e.g. "interac").
        now: Time the transfer was recorded.
        reference: External transfer reference, if any.
        admin_user_id: Admin recording the payout.

    Returns:
        The payout row payload.

    Raises:
        PaymentNotFoundError: Unknown payment.
        PreconditionError: Not a payout row, or not in ``payout_due``.
        AlreadyDone: Already marked paid.
    """
    payment = ledger.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    if payment.type not in PAYOUT_TYPES:
        raise PreconditionError(f"payment {payment_id} is not a payout")

    if payment.status == PaymentStatus.PAID.value:
        raise AlreadyDone("payout already marked paid", result=payment.to_payload())
    if payment.status != PaymentStatus.PAYOUT_DUE.value:
        raise PreconditionError(f"payout is {payment.status}, expected payout_due")

    if not ledger.mark_payout_paid(payment.id, method=method, reference=reference, at=now):
        latest = ledger.get_payment(payment.id) or payment
        raise AlreadyDone("payout already marked paid", result=latest.to_payload())

    record_audit(
        ledger,
        payment.booking_id,
        action=f"payout_paid:{payment.type}",
        actor_role=ADMIN_ACTOR,
        actor_user_id=admin_user_id,
        note=f"method={method}",
    )
    latest = ledger.get_payment(payment.id) or payment
    return latest.to_payload()
