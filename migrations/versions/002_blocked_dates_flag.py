"""Backfill is_blocked_dates from the legacy notes marker.

Revision ID: 002_blocked_dates_flag
Revises: 001_escrow_schema
Create Date: 2026-09-09
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_blocked_dates_flag"
down_revision = "001_escrow_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "002_blocked_dates_flag.sql"
    op.get_bind().exec_driver_sql(sql_path.read_text(encoding="utf-8"))


def downgrade() -> None:
    # The marker text is gone; the flag stays authoritative
    pass
