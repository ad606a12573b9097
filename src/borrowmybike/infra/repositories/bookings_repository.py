"""Bookings repository - persistence for booking rows.

Uses raw SQL with psycopg2 (no ORM). Every state flip is a conditional
UPDATE whose WHERE clause carries the guard; callers learn whether they won
from the returned row (or its absence).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from borrowmybike.infra.db import fetchall_dicts, fetchone_dict

# Columns the guarded flag update may touch
REVIEW_FLAG_COLUMNS = frozenset(
    {
        "needs_review",
        "review_reason",
        "review_note",
        "bike_invalid",
        "treat_as_borrower_no_show",
        "treat_as_owner_no_show",
    }
)

_ROLE_COLUMNS = {
    "borrower": {
        "checked_in": "borrower_checked_in",
        "checked_in_at": "borrower_checked_in_at",
        "confirmed": "borrower_confirmed_complete",
        "force_majeure": "force_majeure_borrower_agreed_at",
    },
    "owner": {
        "checked_in": "owner_checked_in",
        "checked_in_at": "owner_checked_in_at",
        "confirmed": "owner_confirmed_complete",
        "force_majeure": "force_majeure_owner_agreed_at",
    },
}


def _columns(role: str) -> dict[str, str]:
    try:
        return _ROLE_COLUMNS[role]
    except KeyError:
        raise ValueError(f"Invalid role: {role}")


def get_booking(cur: PgCursor, booking_id: str) -> dict[str, Any] | None:
    return fetchone_dict(cur, "SELECT * FROM bookings WHERE id = %s", (booking_id,))


def insert_pending_booking(
    cur: PgCursor,
    *,
    bike_id: str,
    borrower_id: str,
    owner_id: str,
    scheduled_start: datetime,
    duration_minutes: int,
    now: datetime,
) -> dict[str, Any]:
    """Insert a booking through create_pending_booking().

    Raises:
        psycopg2.errors.ExclusionViolation: The bike is already booked
            for an overlapping slot.
    """
    cur.execute(
        "SELECT create_pending_booking(%s, %s, %s, %s, %s, %s)",
        (bike_id, borrower_id, owner_id, scheduled_start, duration_minutes, now),
    )
    booking_id = str(cur.fetchone()[0])
    row = get_booking(cur, booking_id)
    assert row is not None
    return row


def mark_borrower_paid(cur: PgCursor, booking_id: str) -> bool:
    cur.execute(
        """
        UPDATE bookings
        SET borrower_paid = true, updated_at = now()
        WHERE id = %s AND NOT cancelled AND NOT borrower_paid
        RETURNING id
        """,
        (booking_id,),
    )
    return cur.fetchone() is not None


def mark_owner_deposit_paid(cur: PgCursor, booking_id: str) -> bool:
    cur.execute(
        """
        UPDATE bookings
        SET owner_deposit_paid = true, updated_at = now()
        WHERE id = %s AND NOT cancelled AND borrower_paid AND NOT owner_deposit_paid
        RETURNING id
        """,
        (booking_id,),
    )
    return cur.fetchone() is not None


def mark_checked_in(cur: PgCursor, booking_id: str, role: str, at: datetime) -> bool:
    cols = _columns(role)
    cur.execute(
        f"""
        UPDATE bookings
        SET {cols["checked_in"]} = true, {cols["checked_in_at"]} = %s, updated_at = now()
        WHERE id = %s AND NOT {cols["checked_in"]} AND NOT cancelled AND NOT settled
        RETURNING id
        """,
        (at, booking_id),
    )
    return cur.fetchone() is not None


def record_completion_confirmation(
    cur: PgCursor, booking_id: str, role: str, deposit_choice: str | None
) -> dict[str, Any] | None:
    cols = _columns(role)
    return fetchone_dict(
        cur,
        f"""
        UPDATE bookings
        SET {cols["confirmed"]} = true,
            owner_deposit_choice = COALESCE(%s, owner_deposit_choice),
            updated_at = now()
        WHERE id = %s AND NOT settled AND NOT cancelled AND NOT needs_review
        RETURNING *
        """,
        (deposit_choice, booking_id),
    )


def mark_completed(cur: PgCursor, booking_id: str) -> bool:
    cur.execute(
        """
        UPDATE bookings
        SET completed = true, updated_at = now()
        WHERE id = %s AND NOT completed AND NOT cancelled
          AND borrower_confirmed_complete AND owner_confirmed_complete
        RETURNING id
        """,
        (booking_id,),
    )
    return cur.fetchone() is not None


def record_force_majeure_agreement(
    cur: PgCursor, booking_id: str, role: str, at: datetime
) -> dict[str, Any] | None:
    """Record a party's agreement; the first agreement timestamp is kept."""
    column = _columns(role)["force_majeure"]
    return fetchone_dict(
        cur,
        f"""
        UPDATE bookings
        SET {column} = COALESCE({column}, %s), updated_at = now()
        WHERE id = %s
          AND NOT cancelled AND NOT settled
          AND NOT borrower_checked_in AND NOT owner_checked_in
          AND scheduled_start > %s
        RETURNING *
        """,
        (at, booking_id, at),
    )


def set_owner_deposit_choice(cur: PgCursor, booking_id: str, choice: str) -> bool:
    cur.execute(
        """
        UPDATE bookings
        SET owner_deposit_choice = %s, updated_at = now()
        WHERE id = %s AND NOT settled
        RETURNING id
        """,
        (choice, booking_id),
    )
    return cur.fetchone() is not None


def update_review_flags(
    cur: PgCursor, booking_id: str, flags: dict[str, Any]
) -> dict[str, Any] | None:
    """Set review/no-show flags on an open booking.

    Raises:
        ValueError: If a flag is not a review column.
    """
    unknown = set(flags) - REVIEW_FLAG_COLUMNS
    if unknown:
        raise ValueError(f"Invalid review flags: {sorted(unknown)}")
    if not flags:
        return get_booking(cur, booking_id)

    names = sorted(flags)
    assignments = ", ".join(f"{name} = %s" for name in names)
    return fetchone_dict(
        cur,
        f"""
        UPDATE bookings
        SET {assignments}, updated_at = now()
        WHERE id = %s AND NOT settled AND NOT cancelled
        RETURNING *
        """,
        [flags[name] for name in names] + [booking_id],
    )


def claim_cancellation(
    cur: PgCursor,
    booking_id: str,
    cancelled_by: str,
    at: datetime,
    *,
    owner_deposit_paid: bool,
) -> bool:
    """Mark a booking cancelled if it is still in the state the caller checked.

    Args:
        cur: Database cursor.
        booking_id: Booking UUID.
        cancelled_by: Who cancelled (borrower, owner, system_expired).
        at: Cancellation time, which fixes the refund tier.
        owner_deposit_paid: Deposit flag the caller saw. A deposit landing
            after that read makes the claim fail.

    Returns:
        True if this call cancelled the booking.
    """
    cur.execute(
        """
        UPDATE bookings
        SET cancelled = true, cancelled_by = %s, cancelled_at = %s, updated_at = now()
        WHERE id = %s AND NOT cancelled AND NOT settled AND NOT completed
          AND owner_deposit_paid = %s
          AND NOT borrower_checked_in AND NOT owner_checked_in
        RETURNING id
        """,
        (cancelled_by, at, booking_id, owner_deposit_paid),
    )
    return cur.fetchone() is not None


def claim_settlement(cur: PgCursor, booking_id: str, outcome: str, at: datetime) -> bool:
    cur.execute(
        """
        UPDATE bookings
        SET settled = true, settled_at = %s, settlement_outcome = %s, updated_at = now()
        WHERE id = %s
          AND NOT settled AND NOT cancelled
          AND borrower_paid AND owner_deposit_paid
        RETURNING id
        """,
        (at, outcome, booking_id),
    )
    return cur.fetchone() is not None


def list_expirable_bookings(
    cur: PgCursor,
    *,
    now: datetime,
    acceptance_duration: timedelta,
    cutoff_before_start: timedelta,
    limit: int,
) -> list[dict[str, Any]]:
    """Bookings still awaiting the owner whose acceptance deadline has passed."""
    return fetchall_dicts(
        cur,
        """
        SELECT *
        FROM bookings
        WHERE NOT cancelled AND NOT owner_deposit_paid
          AND (created_at + %s <= %s OR scheduled_start - %s <= %s)
        ORDER BY created_at
        LIMIT %s
        """,
        (acceptance_duration, now, cutoff_before_start, now, limit),
    )
