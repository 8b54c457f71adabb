"""Read-only access to property pricing and realtor payout details.

Properties and realtors are owned by the listing and onboarding services;
this module only reads the fields the escrow engine needs.
"""

from __future__ import annotations

from psycopg2.extensions import cursor as PgCursor


def get_property(cur: PgCursor, property_id: str) -> dict | None:
    """Property pricing plus its realtor's timezone and transfer recipient."""
    cur.execute(
        """
        SELECT p.id, p.realtor_id, p.price_per_night_kobo, p.cleaning_fee_kobo,
               p.security_deposit_kobo, p.currency, p.check_in_time,
               p.check_out_time, p.timezone, p.is_active,
               r.user_id, r.timezone, r.transfer_recipient_code
        FROM properties p
        JOIN realtors r ON r.id = p.realtor_id
        WHERE p.id = %s
        """,
        (property_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "realtor_id": str(row[1]),
        "price_per_night_kobo": row[2],
        "cleaning_fee_kobo": row[3] or 0,
        "security_deposit_kobo": row[4] or 0,
        "currency": row[5],
        "check_in_time": row[6],
        "check_out_time": row[7],
        "timezone": row[8],
        "is_active": row[9],
        "realtor_user_id": str(row[10]),
        "realtor_timezone": row[11],
        "transfer_recipient_code": row[12],
    }


def get_realtor(cur: PgCursor, realtor_id: str) -> dict | None:
    cur.execute(
        "SELECT id, user_id, timezone, transfer_recipient_code FROM realtors WHERE id = %s",
        (realtor_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "user_id": str(row[1]),
        "timezone": row[2],
        "transfer_recipient_code": row[3],
    }
