"""Webhook events repository - idempotency log for gateway notifications.

A partial unique index on event_id WHERE status = 'PROCESSED' is the only
mutual exclusion between concurrent deliveries. FAILED and DUPLICATE rows
may repeat and are kept for audit.
"""

from __future__ import annotations

import json

from psycopg2.extensions import cursor as PgCursor

PROCESSED = "PROCESSED"
FAILED = "FAILED"
DUPLICATE = "DUPLICATE"


def build_event_id(provider: str, event_type: str, reference: str) -> str:
    return f"{provider}-{event_type}-{reference}"


def is_processed(cur: PgCursor, event_id: str) -> bool:
    cur.execute(
        "SELECT 1 FROM webhook_events WHERE event_id = %s AND status = 'PROCESSED' LIMIT 1",
        (event_id,),
    )
    return cur.fetchone() is not None


def mark_processed(
    cur: PgCursor,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    payload: dict,
    metadata: dict | None = None,
) -> bool:
    """Insert the PROCESSED marker.

    Returns:
        False when another delivery already holds the marker.
    """
    cur.execute(
        """
        INSERT INTO webhook_events (provider, event_id, event_type, status, payload, metadata)
        VALUES (%s, %s, %s, 'PROCESSED', %s, %s)
        ON CONFLICT (event_id) WHERE status = 'PROCESSED' DO NOTHING
        """,
        (
            provider,
            event_id,
            event_type,
            json.dumps(payload),
            json.dumps(metadata or {}, default=str),
        ),
    )
    return cur.rowcount == 1


def record_event(
    cur: PgCursor,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    status: str,
    payload: dict,
    metadata: dict | None = None,
) -> None:
    """Append a FAILED or DUPLICATE row."""
    if status not in (FAILED, DUPLICATE):
        raise ValueError(f"use mark_processed for {status}")
    cur.execute(
        """
        INSERT INTO webhook_events (provider, event_id, event_type, status, payload, metadata)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (
            provider,
            event_id,
            event_type,
            status,
            json.dumps(payload),
            json.dumps(metadata or {}, default=str),
        ),
    )
