"""Payments repository - persistence for payment records.

Uses raw SQL with psycopg2 (no ORM). A booking has at most one row per
payment type (unique index), so inserting with ON CONFLICT DO NOTHING is
the claim primitive for every money leg.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from borrowmybike.infra.db import fetchall_dicts, fetchone_dict

# Valid status values
VALID_STATUSES = {"initiated", "succeeded", "payout_due", "paid", "failed"}


def get_payment(cur: PgCursor, payment_id: str) -> dict[str, Any] | None:
    return fetchone_dict(cur, "SELECT * FROM payments WHERE id = %s", (payment_id,))


def find_payment(cur: PgCursor, booking_id: str, payment_type: str) -> dict[str, Any] | None:
    return fetchone_dict(
        cur,
        "SELECT * FROM payments WHERE booking_id = %s AND type = %s",
        (booking_id, payment_type),
    )


def list_payments(cur: PgCursor, booking_id: str) -> list[dict[str, Any]]:
    return fetchall_dicts(
        cur,
        "SELECT * FROM payments WHERE booking_id = %s ORDER BY created_at, id",
        (booking_id,),
    )


def insert_payment_if_absent(
    cur: PgCursor,
    *,
    booking_id: str,
    user_id: str | None,
    payment_type: str,
    method: str,
    status: str,
    amount_cents: int,
    currency: str,
    gateway_reference: str | None = None,
) -> tuple[dict[str, Any], bool]:
    """Insert the (booking_id, type) row unless one exists.

    Returns:
        (row, created). When the row already existed, it is returned as is.

    Raises:
        ValueError: If status is not in VALID_STATUSES.
    """
    if status not in VALID_STATUSES:
        raise ValueError(f"Invalid status: {status}. Must be one of {VALID_STATUSES}")

    row = fetchone_dict(
        cur,
        """
        INSERT INTO payments (
            booking_id, user_id, type, method, status,
            amount_cents, currency, gateway_reference
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (booking_id, type) DO NOTHING
        RETURNING *
        """,
        (
            booking_id,
            user_id,
            payment_type,
            method,
            status,
            amount_cents,
            currency,
            gateway_reference,
        ),
    )
    if row is not None:
        return row, True

    existing = find_payment(cur, booking_id, payment_type)
    assert existing is not None
    return existing, False


def complete_payment(
    cur: PgCursor,
    *,
    payment_id: str,
    status: str,
    amount_cents: int | None = None,
    refund_reference: str | None = None,
) -> bool:
    """Flip an ``initiated`` row to its final status.

    Raises:
        ValueError: If status is not in VALID_STATUSES.
    """
    if status not in VALID_STATUSES:
        raise ValueError(f"Invalid status: {status}. Must be one of {VALID_STATUSES}")

    cur.execute(
        """
        UPDATE payments
        SET status = %s,
            amount_cents = COALESCE(%s, amount_cents),
            refund_reference = COALESCE(%s, refund_reference),
            updated_at = now()
        WHERE id = %s AND status = 'initiated'
        RETURNING id
        """,
        (status, amount_cents, refund_reference, payment_id),
    )
    return cur.fetchone() is not None


def delete_initiated_payment(cur: PgCursor, payment_id: str) -> bool:
    """Remove a claim row whose external call is known to have had no effect."""
    cur.execute(
        "DELETE FROM payments WHERE id = %s AND status = 'initiated' RETURNING id",
        (payment_id,),
    )
    return cur.fetchone() is not None


def mark_payout_paid(
    cur: PgCursor,
    *,
    payment_id: str,
    method: str,
    reference: str | None,
    at: datetime,
) -> bool:
    cur.execute(
        """
        UPDATE payments
        SET status = 'paid', payout_method = %s, payout_reference = %s,
            paid_at = %s, updated_at = now()
        WHERE id = %s AND status = 'payout_due'
        RETURNING id
        """,
        (method, reference, at, payment_id),
    )
    return cur.fetchone() is not None
