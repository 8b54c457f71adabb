"""Settlement transfers repository.

One row per ledger entry that moves money out of the platform. The row
carries the mutable retry state (status, attempts, current reference)
that the ledger itself never holds.
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

TRANSFER_COLUMNS = (
    "id",
    "escrow_event_id",
    "booking_id",
    "event_type",
    "kind",
    "amount_kobo",
    "currency",
    "recipient_party",
    "recipient_code",
    "charge_reference",
    "base_reference",
    "reference",
    "reference_history",
    "status",
    "attempts",
    "last_error",
    "provider_response",
    "metadata",
    "dispatched_at",
    "confirmed_at",
    "escalated_at",
    "resolved_at",
    "resolved_by",
    "created_at",
    "updated_at",
)

_MUTABLE_COLUMNS = frozenset({
    "status",
    "attempts",
    "reference",
    "last_error",
    "provider_response",
    "metadata",
    "dispatched_at",
    "confirmed_at",
    "escalated_at",
    "resolved_at",
    "resolved_by",
})

_SELECT = "SELECT " + ", ".join(TRANSFER_COLUMNS) + " FROM settlement_transfers"


def _to_dict(row: tuple | None) -> dict | None:
    if row is None:
        return None
    transfer = dict(zip(TRANSFER_COLUMNS, row))
    transfer["id"] = str(transfer["id"])
    transfer["booking_id"] = str(transfer["booking_id"])
    transfer["reference_history"] = list(transfer["reference_history"] or [])
    transfer["metadata"] = transfer["metadata"] or {}
    return transfer


def insert_transfer(
    cur: PgCursor,
    *,
    escrow_event_id: int,
    booking_id: str,
    event_type: str,
    kind: str,
    amount_kobo: int,
    currency: str,
    recipient_party: str,
    recipient_code: str | None,
    charge_reference: str | None,
    base_reference: str,
) -> str:
    """Create the PENDING transfer for a ledger entry. Returns its id."""
    cur.execute(
        """
        INSERT INTO settlement_transfers (
            escrow_event_id, booking_id, event_type, kind, amount_kobo, currency,
            recipient_party, recipient_code, charge_reference,
            base_reference, reference, reference_history, status, attempts
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, ARRAY[%s], 'PENDING', 0)
        RETURNING id
        """,
        (
            escrow_event_id,
            booking_id,
            event_type,
            kind,
            amount_kobo,
            currency,
            recipient_party,
            recipient_code,
            charge_reference,
            base_reference,
            base_reference,
            base_reference,
        ),
    )
    return str(cur.fetchone()[0])


def get_transfer(cur: PgCursor, transfer_id: str, *, for_update: bool = False) -> dict | None:
    query = _SELECT + " WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (transfer_id,))
    return _to_dict(cur.fetchone())


def get_transfer_by_reference(
    cur: PgCursor,
    reference: str,
    *,
    for_update: bool = False,
) -> dict | None:
    """Find a transfer by its current or any superseded reference."""
    query = _SELECT + " WHERE %s = ANY(reference_history)"
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (reference,))
    return _to_dict(cur.fetchone())


def update_transfer(cur: PgCursor, transfer_id: str, **fields: Any) -> None:
    """Update mutable columns. A new ``reference`` is appended to the history."""
    unknown = set(fields) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"transfer columns not updatable: {sorted(unknown)}")
    if not fields:
        return

    assignments = []
    values: list[Any] = []
    for column, value in fields.items():
        if column in ("provider_response", "metadata"):
            if column == "metadata":
                assignments.append("metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb")
            else:
                assignments.append("provider_response = %s::jsonb")
            values.append(json.dumps(value, default=str))
        elif column == "reference":
            assignments.append("reference = %s, reference_history = array_append(reference_history, %s)")
            values.extend([value, value])
        else:
            assignments.append(f"{column} = %s")
            values.append(value)

    cur.execute(
        f"UPDATE settlement_transfers SET {', '.join(assignments)}, updated_at = now() WHERE id = %s",
        (*values, transfer_id),
    )


def list_transfers(
    cur: PgCursor,
    *,
    status: str | None = None,
    booking_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    clauses = []
    params: list[Any] = []
    if status is not None:
        clauses.append("status = %s")
        params.append(status)
    if booking_id is not None:
        clauses.append("booking_id = %s")
        params.append(booking_id)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    cur.execute(_SELECT + where + " ORDER BY created_at LIMIT %s", (*params, limit))
    return [_to_dict(row) for row in cur.fetchall()]


def list_undispatched(cur: PgCursor, *, limit: int = 50) -> list[str]:
    """In-flight transfers whose current reference was never accepted by the gateway."""
    cur.execute(
        """
        SELECT id FROM settlement_transfers
        WHERE status IN ('PENDING', 'RETRYING') AND dispatched_at IS NULL
        ORDER BY created_at
        LIMIT %s
        """,
        (limit,),
    )
    return [str(row[0]) for row in cur.fetchall()]


def list_uncertain_refunds(cur: PgCursor, *, limit: int = 50) -> list[str]:
    """Refunds sent to the gateway whose outcome was never learned."""
    cur.execute(
        """
        SELECT id FROM settlement_transfers
        WHERE status IN ('PENDING', 'RETRYING') AND kind = 'refund'
          AND dispatched_at IS NOT NULL
          AND COALESCE((metadata->>'dispatch_uncertain')::boolean, false)
        ORDER BY dispatched_at
        LIMIT %s
        """,
        (limit,),
    )
    return [str(row[0]) for row in cur.fetchall()]
