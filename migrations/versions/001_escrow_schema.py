"""Escrow settlement schema (SQL-only).

Revision ID: 001_escrow_schema
Revises:
Create Date: 2026-09-02
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_escrow_schema"
down_revision = None
branch_labels = None
depends_on = None

_TABLES = (
    "platform_settings",
    "outbox_events",
    "webhook_events",
    "settlement_transfers",
    "escrow_events",
    "payments",
    "bookings",
    "properties",
    "realtors",
    "users",
)


def upgrade() -> None:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_escrow_schema.sql"
    # exec_driver_sql so the plpgsql $$ body passes through untouched
    op.get_bind().exec_driver_sql(sql_path.read_text(encoding="utf-8"))


def downgrade() -> None:
    conn = op.get_bind()
    for table in _TABLES:
        conn.exec_driver_sql(f"DROP TABLE IF EXISTS {table} CASCADE")
    conn.exec_driver_sql("DROP FUNCTION IF EXISTS escrow_events_immutable()")
