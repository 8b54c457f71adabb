"""Payments repository - one payment row per booking.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

PAYMENT_COLUMNS = (
    "id",
    "booking_id",
    "amount_kobo",
    "currency",
    "status",
    "provider",
    "reference",
    "provider_transaction_id",
    "paid_at",
    "room_fee_in_escrow",
    "deposit_in_escrow",
    "room_fee_released_at",
    "deposit_released_at",
    "realtor_transfer_initiated_at",
    "realtor_transfer_completed_at",
    "realtor_transfer_reference",
    "realtor_transfer_failed",
    "metadata",
    "created_at",
    "updated_at",
)

_MUTABLE_COLUMNS = frozenset({
    "status",
    "provider_transaction_id",
    "paid_at",
    "room_fee_in_escrow",
    "deposit_in_escrow",
    "room_fee_released_at",
    "deposit_released_at",
    "realtor_transfer_initiated_at",
    "realtor_transfer_completed_at",
    "realtor_transfer_reference",
    "realtor_transfer_failed",
    "metadata",
})

_SELECT = "SELECT " + ", ".join(PAYMENT_COLUMNS) + " FROM payments"


def _to_dict(row: tuple | None) -> dict | None:
    if row is None:
        return None
    payment = dict(zip(PAYMENT_COLUMNS, row))
    payment["id"] = str(payment["id"])
    payment["booking_id"] = str(payment["booking_id"])
    payment["metadata"] = payment["metadata"] or {}
    return payment


def insert_payment(
    cur: PgCursor,
    *,
    booking_id: str,
    amount_kobo: int,
    currency: str,
    status: str,
    reference: str,
    provider: str = "paystack",
    paid_at=None,
) -> str:
    """Insert the payment row for a booking. Returns the payment id."""
    cur.execute(
        """
        INSERT INTO payments (
            booking_id, amount_kobo, currency, status, provider, reference, paid_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (booking_id, amount_kobo, currency, status, provider, reference, paid_at),
    )
    return str(cur.fetchone()[0])


def get_payment_by_booking(
    cur: PgCursor,
    booking_id: str,
    *,
    for_update: bool = False,
) -> dict | None:
    query = _SELECT + " WHERE booking_id = %s"
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (booking_id,))
    return _to_dict(cur.fetchone())


def get_payment_by_reference(
    cur: PgCursor,
    reference: str,
    *,
    for_update: bool = False,
) -> dict | None:
    """Find a payment by its gateway charge reference."""
    query = _SELECT + " WHERE provider = 'paystack' AND reference = %s"
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (reference,))
    return _to_dict(cur.fetchone())


def update_payment(cur: PgCursor, payment_id: str, **fields: Any) -> None:
    """Update mutable payment columns; ``metadata`` is merged, not replaced."""
    unknown = set(fields) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"payment columns not updatable: {sorted(unknown)}")
    if not fields:
        return

    assignments = []
    values: list[Any] = []
    for column, value in fields.items():
        if column == "metadata":
            assignments.append("metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb")
            values.append(json.dumps(value, default=str))
        else:
            assignments.append(f"{column} = %s")
            values.append(value)

    cur.execute(
        f"UPDATE payments SET {', '.join(assignments)}, updated_at = now() WHERE id = %s",
        (*values, payment_id),
    )
