"""Outbox repository - notification-worthy events for external dispatchers.

Events are written in the same transaction as the state change they
describe. Payloads carry ids and amounts only, never PII.
"""

import json

from psycopg2.extensions import cursor as PgCursor

PRIORITY_NORMAL = "normal"
PRIORITY_URGENT = "urgent"


def emit_event(
    cur: PgCursor,
    *,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    priority: str = PRIORITY_NORMAL,
    correlation_id: str | None = None,
) -> int:
    """Emit an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        event_type: Event type (e.g., BOOKING_CONFIRMED).
        aggregate_type: Aggregate type (e.g., booking, transfer).
        aggregate_id: Aggregate ID.
        payload: Optional JSON payload (no PII).
        priority: "normal" or "urgent" (operator paging).
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The generated event ID.
    """
    payload_json = json.dumps(payload, default=str) if payload else None

    cur.execute(
        """
        INSERT INTO outbox_events (
            event_type, aggregate_type, aggregate_id,
            payload, priority, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            event_type,
            aggregate_type,
            aggregate_id,
            payload_json,
            priority,
            correlation_id,
        ),
    )
    return cur.fetchone()[0]
