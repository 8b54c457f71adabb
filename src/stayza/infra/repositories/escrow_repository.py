"""Escrow ledger repository - append-only record of every fund movement.

No update or delete function exists; the database rejects both with a
trigger. Writes happen inside the caller's transaction, under the booking
row lock, together with the state change that caused them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from psycopg2.extensions import cursor as PgCursor

from stayza.domain.errors import LedgerOverdrawError, ValidationError
from stayza.domain.states import EscrowEventType, LedgerParty

ESCROW_EVENT_COLUMNS = (
    "id",
    "booking_id",
    "event_type",
    "amount_kobo",
    "currency",
    "from_party",
    "to_party",
    "provider_reference",
    "provider_response",
    "notes",
    "triggered_by",
    "created_at",
)


@dataclass(frozen=True)
class LedgerTotals:
    """Per-booking flow totals used by the overdraw guard."""

    total_price_kobo: int
    escrow_in_kobo: int
    escrow_out_kobo: int
    customer_out_kobo: int

    @property
    def escrow_balance_kobo(self) -> int:
        return self.escrow_in_kobo - self.escrow_out_kobo


def escrow_balance(entries: list[dict]) -> int:
    """Net amount currently held in escrow for a list of ledger entries."""
    balance = 0
    for entry in entries:
        if entry["to_party"] == LedgerParty.ESCROW.value:
            balance += entry["amount_kobo"]
        if entry["from_party"] == LedgerParty.ESCROW.value:
            balance -= entry["amount_kobo"]
    return balance


def check_no_overdraw(
    totals: LedgerTotals,
    *,
    amount_kobo: int,
    from_party: str,
) -> None:
    """Raise LedgerOverdrawError if recording this movement would overdraw."""
    if from_party == LedgerParty.ESCROW.value and amount_kobo > totals.escrow_balance_kobo:
        raise LedgerOverdrawError(
            f"escrow holds {totals.escrow_balance_kobo}, cannot release {amount_kobo}"
        )
    if (
        from_party == LedgerParty.CUSTOMER.value
        and totals.customer_out_kobo + amount_kobo > totals.total_price_kobo
    ):
        raise LedgerOverdrawError(
            f"customer payments would exceed booking total {totals.total_price_kobo}"
        )


def get_totals(cur: PgCursor, booking_id: str) -> LedgerTotals:
    cur.execute(
        """
        SELECT b.total_price_kobo,
               COALESCE(SUM(e.amount_kobo) FILTER (WHERE e.to_party = 'ESCROW'), 0),
               COALESCE(SUM(e.amount_kobo) FILTER (WHERE e.from_party = 'ESCROW'), 0),
               COALESCE(SUM(e.amount_kobo) FILTER (WHERE e.from_party = 'CUSTOMER'), 0)
        FROM bookings b
        LEFT JOIN escrow_events e ON e.booking_id = b.id
        WHERE b.id = %s
        GROUP BY b.total_price_kobo
        """,
        (booking_id,),
    )
    row = cur.fetchone()
    if row is None:
        raise ValidationError(f"booking {booking_id} not found for ledger write")
    return LedgerTotals(*(int(v) for v in row))


def record(
    cur: PgCursor,
    *,
    booking_id: str,
    event_type: EscrowEventType | str,
    amount_kobo: int,
    from_party: LedgerParty | str,
    to_party: LedgerParty | str,
    currency: str = "NGN",
    reference: str | None = None,
    notes: str | None = None,
    triggered_by: str | None = None,
    provider_response: dict | None = None,
) -> dict:
    """Append one fund movement to the ledger.

    Returns:
        The inserted entry as a dict (including id and created_at).

    Raises:
        ValidationError: Non-positive amount or identical parties.
        LedgerOverdrawError: The movement would overdraw escrow or the customer.
    """
    event_type = EscrowEventType(event_type).value
    from_party = LedgerParty(from_party).value
    to_party = LedgerParty(to_party).value

    if amount_kobo <= 0:
        raise ValidationError(f"ledger amount must be positive, got {amount_kobo}")
    if from_party == to_party:
        raise ValidationError("ledger movement needs two distinct parties")

    check_no_overdraw(
        get_totals(cur, booking_id),
        amount_kobo=amount_kobo,
        from_party=from_party,
    )

    cur.execute(
        """
        INSERT INTO escrow_events (
            booking_id, event_type, amount_kobo, currency, from_party, to_party,
            provider_reference, provider_response, notes, triggered_by
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, created_at
        """,
        (
            booking_id,
            event_type,
            amount_kobo,
            currency,
            from_party,
            to_party,
            reference,
            json.dumps(provider_response) if provider_response is not None else None,
            notes,
            triggered_by,
        ),
    )
    entry_id, created_at = cur.fetchone()
    return {
        "id": entry_id,
        "booking_id": booking_id,
        "event_type": event_type,
        "amount_kobo": amount_kobo,
        "currency": currency,
        "from_party": from_party,
        "to_party": to_party,
        "provider_reference": reference,
        "provider_response": provider_response,
        "notes": notes,
        "triggered_by": triggered_by,
        "created_at": created_at,
    }


def list_timeline(cur: PgCursor, booking_id: str) -> list[dict]:
    """Ledger entries for a booking, newest first."""
    cur.execute(
        "SELECT " + ", ".join(ESCROW_EVENT_COLUMNS) + """
        FROM escrow_events
        WHERE booking_id = %s
        ORDER BY created_at DESC, id DESC
        """,
        (booking_id,),
    )
    entries = []
    for row in cur.fetchall():
        entry = dict(zip(ESCROW_EVENT_COLUMNS, row))
        entry["booking_id"] = str(entry["booking_id"])
        entries.append(entry)
    return entries


def sum_released_to_realtor(
    cur: PgCursor,
    *,
    realtor_id: str,
    start: datetime,
    end: datetime,
) -> int:
    """Total moved into a realtor's wallet in [start, end)."""
    cur.execute(
        """
        SELECT COALESCE(SUM(e.amount_kobo), 0)
        FROM escrow_events e
        JOIN bookings b ON b.id = e.booking_id
        WHERE b.realtor_id = %s
          AND e.to_party = 'REALTOR_WALLET'
          AND e.created_at >= %s AND e.created_at < %s
        """,
        (realtor_id, start, end),
    )
    row = cur.fetchone()
    return int(row[0]) if row else 0
