"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- fetchone_dict/fetchall_dicts: Query helpers returning column-keyed dicts
- for_update(): SELECT ... FOR UPDATE helper
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Returns:
        psycopg2 connection object.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Args:
        conn: Optional existing connection. If None, creates new one.

    Yields:
        Cursor for executing queries within the transaction.

    Example:
        with txn() as cur:
            cur.execute("UPDATE bookings SET settled = true WHERE id = %s", (bid,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def _row_to_dict(cur: PgCursor, row: tuple[Any, ...]) -> dict[str, Any]:
    columns = [col[0] for col in cur.description]
    return dict(zip(columns, row))


def fetchone_dict(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> dict[str, Any] | None:
    """Execute query and fetch one row keyed by column name.

    Args:
        cur: Database cursor.
        query: SQL query with %s placeholders.
        params: Query parameters.

    Returns:
        Dict of column -> value, or None if no results.
    """
    cur.execute(query, params)
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_dict(cur, row)


def fetchall_dicts(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[dict[str, Any]]:
    """Execute query and fetch all rows keyed by column name.

    Args:
        cur: Database cursor.
        query: SQL query with %s placeholders.
        params: Query parameters.

    Returns:
        List of column -> value dicts, empty if no results.
    """
    cur.execute(query, params)
    return [_row_to_dict(cur, row) for row in cur.fetchall()]


def for_update(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
    *,
    skip_locked: bool = False,
) -> list[dict[str, Any]]:
    """Execute SELECT ... FOR UPDATE and fetch all locked rows.

    Use within a transaction to lock the selected rows until commit/rollback.

    Args:
        cur: Database cursor.
        query: SELECT query (without FOR UPDATE).
        params: Query parameters.
        skip_locked: If True, skip rows locked by a concurrent transaction.

    Returns:
        Locked rows as column -> value dicts.
    """
    suffix = " FOR UPDATE"
    if skip_locked:
        suffix += " SKIP LOCKED"

    full_query = query.rstrip().rstrip(";") + suffix
    return fetchall_dicts(cur, full_query, params)
