"""Initial schema (SQL-only): users, bookings, payments, credits, audit log.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-09-14
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

# Reverse dependency order: children before the tables they reference
_TABLES = (
    "idempotency_keys",
    "processed_events",
    "booking_audit_log",
    "credits",
    "payments",
    "bookings",
    "users",
)


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_initial.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    # exec_driver_sql passes the $$ function body through untouched
    op.get_bind().exec_driver_sql(_read_sql())


def downgrade() -> None:
    op.execute(
        "DROP FUNCTION IF EXISTS create_pending_booking("
        "text, uuid, uuid, timestamptz, integer, timestamptz)"
    )
    for table in _TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table}")
