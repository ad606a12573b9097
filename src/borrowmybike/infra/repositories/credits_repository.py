"""Credits repository - persistence for booking credits.

Uses raw SQL with psycopg2 (no ORM). A credit flips available -> used at
most once (conditional UPDATE on status); leftovers are new rows pointing
at their parent.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from borrowmybike.infra.db import fetchall_dicts, fetchone_dict, for_update


def list_usable_credits(
    cur: PgCursor,
    *,
    user_id: str,
    now: datetime,
    credit_types: tuple[str, ...] | None = None,
    lock: bool = False,
) -> list[dict[str, Any]]:
    """List a user's spendable credits, soonest expiry first.

    Args:
        cur: Database cursor.
        user_id: Credit holder.
        now: Credits expiring at or before this are skipped.
        credit_types: Restrict to these credit types.
        lock: Lock the rows (FOR UPDATE) for a consumption transaction.

    Returns:
        Credit rows as dicts.
    """
    query = """
        SELECT *
        FROM credits
        WHERE user_id = %s AND status = 'available' AND expires_at > %s
    """
    params: list[Any] = [user_id, now]
    if credit_types is not None:
        query += " AND credit_type = ANY(%s)"
        params.append(list(credit_types))
    query += " ORDER BY expires_at, created_at"

    if lock:
        return for_update(cur, query, params)
    return fetchall_dicts(cur, query, params)


def list_booking_credits(cur: PgCursor, booking_id: str) -> list[dict[str, Any]]:
    return fetchall_dicts(
        cur,
        """
        SELECT *
        FROM credits
        WHERE origin_booking_id = %s OR used_on_booking_id = %s
        ORDER BY created_at, id
        """,
        (booking_id, booking_id),
    )


def find_issued_credit(
    cur: PgCursor, *, origin_booking_id: str, user_id: str, credit_type: str
) -> dict[str, Any] | None:
    return fetchone_dict(
        cur,
        """
        SELECT *
        FROM credits
        WHERE origin_booking_id = %s AND user_id = %s AND credit_type = %s
          AND split_from_credit_id IS NULL
        """,
        (origin_booking_id, user_id, credit_type),
    )


def list_consumed_by(cur: PgCursor, payment_id: str) -> list[dict[str, Any]]:
    """Credits spent toward one credit-funded payment row."""
    return fetchall_dicts(
        cur,
        "SELECT * FROM credits WHERE consumed_by_payment_id = %s ORDER BY used_at, id",
        (payment_id,),
    )


def list_remainders(cur: PgCursor, parent_ids: list[str]) -> list[dict[str, Any]]:
    if not parent_ids:
        return []
    return fetchall_dicts(
        cur,
        "SELECT * FROM credits WHERE split_from_credit_id = ANY(%s::uuid[])",
        (parent_ids,),
    )


def mark_used(
    cur: PgCursor,
    *,
    credit_id: str,
    booking_id: str,
    payment_id: str,
    at: datetime,
) -> bool:
    """Flip one credit from available to used.

    Args:
        cur: Database cursor.
        credit_id: Credit to consume.
        booking_id: Booking the credit pays toward.
        payment_id: Credit payment row consuming it.
        at: Consumption time.

    Returns:
        False if another transaction used the credit first.
    """
    cur.execute(
        """
        UPDATE credits
        SET status = 'used', used_on_booking_id = %s, consumed_by_payment_id = %s, used_at = %s
        WHERE id = %s AND status = 'available'
        RETURNING id
        """,
        (booking_id, payment_id, at, credit_id),
    )
    return cur.fetchone() is not None


def insert_credit_if_absent(
    cur: PgCursor,
    *,
    user_id: str,
    credit_type: str,
    amount_cents: int,
    origin_booking_id: str | None,
    reason: str,
    expires_at: datetime,
    split_from_credit_id: str | None = None,
) -> tuple[dict[str, Any], bool]:
    """Insert a credit unless the issued-once or one-remainder index already holds one.

    Returns:
        (row, created).
    """
    row = fetchone_dict(
        cur,
        """
        INSERT INTO credits (
            user_id, credit_type, amount_cents, status, origin_booking_id,
            reason, expires_at, split_from_credit_id
        )
        VALUES (%s, %s, %s, 'available', %s, %s, %s, %s)
        ON CONFLICT DO NOTHING
        RETURNING *
        """,
        (
            user_id,
            credit_type,
            amount_cents,
            origin_booking_id,
            reason,
            expires_at,
            split_from_credit_id,
        ),
    )
    if row is not None:
        return row, True

    if split_from_credit_id is not None:
        existing = fetchone_dict(
            cur,
            "SELECT * FROM credits WHERE split_from_credit_id = %s",
            (split_from_credit_id,),
        )
    else:
        existing = find_issued_credit(
            cur,
            origin_booking_id=origin_booking_id,
            user_id=user_id,
            credit_type=credit_type,
        )
    assert existing is not None
    return existing, False
