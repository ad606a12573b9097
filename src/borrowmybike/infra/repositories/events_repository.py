"""Audit log, webhook receipts and idempotency keys.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor


def insert_audit(
    cur: PgCursor,
    *,
    booking_id: str,
    actor_role: str,
    actor_user_id: str | None,
    action: str,
    note: str | None,
    correlation_id: str | None,
) -> None:
    cur.execute(
        """
        INSERT INTO booking_audit_log (
            booking_id, actor_role, actor_user_id, action, note, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (booking_id, actor_role, actor_user_id, action, note, correlation_id),
    )


def is_event_processed(cur: PgCursor, *, source: str, external_id: str) -> bool:
    cur.execute(
        "SELECT 1 FROM processed_events WHERE source = %s AND external_id = %s",
        (source, external_id),
    )
    return cur.fetchone() is not None


def insert_processed_event(cur: PgCursor, *, source: str, external_id: str) -> bool:
    """Record a webhook receipt. Returns False if it was already recorded."""
    cur.execute(
        """
        INSERT INTO processed_events (source, external_id)
        VALUES (%s, %s)
        ON CONFLICT (source, external_id) DO NOTHING
        """,
        (source, external_id),
    )
    return cur.rowcount == 1


def get_idempotent_response(
    cur: PgCursor, *, idempotency_key: str, endpoint: str
) -> tuple[int, dict[str, Any]] | None:
    cur.execute(
        """
        SELECT response_code, response_body
        FROM idempotency_keys
        WHERE idempotency_key = %s AND endpoint = %s
        """,
        (idempotency_key, endpoint),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return row[0], json.loads(row[1])


def insert_idempotent_response(
    cur: PgCursor,
    *,
    idempotency_key: str,
    endpoint: str,
    user_id: str | None,
    response_code: int,
    response_body: dict[str, Any],
) -> None:
    cur.execute(
        """
        INSERT INTO idempotency_keys
            (idempotency_key, endpoint, user_id, response_code, response_body)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (idempotency_key, endpoint) DO NOTHING
        """,
        (idempotency_key, endpoint, user_id, response_code, json.dumps(response_body)),
    )
