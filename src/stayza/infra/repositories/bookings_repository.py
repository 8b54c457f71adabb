"""Bookings repository - raw SQL over the bookings table.

Uses raw SQL with psycopg2 (no ORM). Rows are returned as dicts keyed by
column name.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from psycopg2.extensions import cursor as PgCursor

BOOKING_COLUMNS = (
    "id",
    "property_id",
    "realtor_id",
    "guest_id",
    "check_in_date",
    "check_out_date",
    "check_in_at",
    "check_out_at",
    "nights",
    "currency",
    "status",
    "stay_status",
    "is_blocked_dates",
    "room_fee_kobo",
    "cleaning_fee_kobo",
    "security_deposit_kobo",
    "service_fee_kobo",
    "service_fee_stayza_kobo",
    "service_fee_processing_kobo",
    "processing_mode",
    "platform_fee_kobo",
    "total_price_kobo",
    "commission_base_rate",
    "commission_volume_reduction_rate",
    "commission_effective_rate",
    "monthly_volume_kobo",
    "realtor_payout_kobo",
    "checkin_confirmed_at",
    "checkin_confirmation_type",
    "checked_out_at",
    "guest_dispute_closes_at",
    "guest_dispute_opened",
    "realtor_dispute_closes_at",
    "realtor_dispute_opened",
    "dispute_subject",
    "dispute_claim_kobo",
    "dispute_reason",
    "refund_tier",
    "cancelled_at",
    "cancelled_by",
    "cancellation_reason",
    "completed_at",
    "notes",
    "created_at",
    "updated_at",
)

# Columns a transition may change; identity and frozen quote fields are excluded
_MUTABLE_COLUMNS = frozenset({
    "status",
    "stay_status",
    "checkin_confirmed_at",
    "checkin_confirmation_type",
    "checked_out_at",
    "guest_dispute_closes_at",
    "guest_dispute_opened",
    "realtor_dispute_closes_at",
    "realtor_dispute_opened",
    "dispute_subject",
    "dispute_claim_kobo",
    "dispute_reason",
    "refund_tier",
    "cancelled_at",
    "cancelled_by",
    "cancellation_reason",
    "completed_at",
})

_SELECT = "SELECT " + ", ".join(BOOKING_COLUMNS) + " FROM bookings"


def _to_dict(row: tuple | None) -> dict | None:
    if row is None:
        return None
    booking = dict(zip(BOOKING_COLUMNS, row))
    booking["id"] = str(booking["id"])
    return booking


def get_booking(
    cur: PgCursor,
    booking_id: str,
    *,
    for_update: bool = False,
    skip_locked: bool = False,
) -> dict | None:
    """Fetch a booking, optionally locking its row for the transaction."""
    query = _SELECT + " WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
        if skip_locked:
            query += " SKIP LOCKED"
    cur.execute(query, (booking_id,))
    return _to_dict(cur.fetchone())


def insert_booking(cur: PgCursor, **fields: Any) -> str:
    """Insert a booking row and return its id.

    Keyword names must be booking columns.
    """
    unknown = set(fields) - set(BOOKING_COLUMNS)
    if unknown:
        raise ValueError(f"unknown booking columns: {sorted(unknown)}")

    columns = list(fields)
    placeholders = ", ".join(["%s"] * len(columns))
    cur.execute(
        f"INSERT INTO bookings ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
        tuple(fields[c] for c in columns),
    )
    return str(cur.fetchone()[0])


def update_booking(cur: PgCursor, booking_id: str, **fields: Any) -> None:
    """Update mutable booking columns and bump updated_at."""
    unknown = set(fields) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"booking columns not updatable: {sorted(unknown)}")
    if not fields:
        return

    assignments = ", ".join(f"{column} = %s" for column in fields)
    cur.execute(
        f"UPDATE bookings SET {assignments}, updated_at = now() WHERE id = %s",
        (*fields.values(), booking_id),
    )


def has_overlapping_booking(
    cur: PgCursor,
    *,
    property_id: str,
    check_in_date,
    check_out_date,
) -> bool:
    """True if a live booking on the property overlaps [check_in, check_out)."""
    cur.execute(
        """
        SELECT 1 FROM bookings
        WHERE property_id = %s
          AND status IN ('PENDING', 'ACTIVE', 'DISPUTED')
          AND check_in_date < %s
          AND check_out_date > %s
        LIMIT 1
        """,
        (property_id, check_out_date, check_in_date),
    )
    return cur.fetchone() is not None


def realtor_confirmed_volume(
    cur: PgCursor,
    *,
    realtor_id: str,
    start: datetime,
    end: datetime,
) -> int:
    """Sum of room fees of paid, non-cancelled bookings for a realtor in [start, end)."""
    cur.execute(
        """
        SELECT COALESCE(SUM(b.room_fee_kobo), 0)
        FROM bookings b
        JOIN payments p ON p.booking_id = b.id
        WHERE b.realtor_id = %s
          AND b.is_blocked_dates = false
          AND b.status IN ('ACTIVE', 'DISPUTED', 'COMPLETED')
          AND p.paid_at >= %s AND p.paid_at < %s
        """,
        (realtor_id, start, end),
    )
    row = cur.fetchone()
    return int(row[0]) if row else 0


def list_sweep_candidates(
    cur: PgCursor,
    *,
    now: datetime,
    auto_checkin_delay: timedelta,
    limit: int = 100,
) -> dict[str, list[str]]:
    """Booking ids with a time-triggered transition due at ``now``.

    Read without locks; each id is re-locked and re-checked before acting.
    """
    queries = {
        "auto_checkin": """
            SELECT b.id FROM bookings b
            WHERE b.status = 'ACTIVE' AND b.stay_status IS NULL
              AND b.is_blocked_dates = false
              AND b.check_in_at + %s <= %s
            ORDER BY b.check_in_at LIMIT %s
        """,
        "auto_checkout": """
            SELECT b.id FROM bookings b
            WHERE b.status = 'ACTIVE' AND b.stay_status = 'CHECKED_IN'
              AND b.check_out_at <= %s
            ORDER BY b.check_out_at LIMIT %s
        """,
        "room_fee_release": """
            SELECT b.id FROM bookings b
            JOIN payments p ON p.booking_id = b.id
            WHERE b.status = 'ACTIVE' AND b.guest_dispute_opened = false
              AND b.guest_dispute_closes_at <= %s
              AND p.room_fee_in_escrow = true
            ORDER BY b.guest_dispute_closes_at LIMIT %s
        """,
        "deposit_release": """
            SELECT b.id FROM bookings b
            WHERE b.status = 'ACTIVE' AND b.stay_status = 'CHECKED_OUT'
              AND b.realtor_dispute_opened = false
              AND b.realtor_dispute_closes_at <= %s
            ORDER BY b.realtor_dispute_closes_at LIMIT %s
        """,
        "blocked_dates_complete": """
            SELECT b.id FROM bookings b
            WHERE b.status = 'ACTIVE' AND b.is_blocked_dates = true
              AND b.check_out_at <= %s
            ORDER BY b.check_out_at LIMIT %s
        """,
    }
    candidates: dict[str, list[str]] = {}
    for kind, query in queries.items():
        if kind == "auto_checkin":
            params: tuple = (auto_checkin_delay, now, limit)
        else:
            params = (now, limit)
        cur.execute(query, params)
        candidates[kind] = [str(row[0]) for row in cur.fetchall()]
    return candidates
