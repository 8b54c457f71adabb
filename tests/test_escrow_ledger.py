"""Tests for the escrow ledger write guards (no DB needed)."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from stayza.domain.errors import LedgerOverdrawError, ValidationError
from stayza.infra.repositories.escrow_repository import (
    LedgerTotals,
    check_no_overdraw,
    escrow_balance,
    record,
)


def _cursor(totals_row, inserted=(41, datetime(2026, 11, 1, tzinfo=timezone.utc))):
    cur = MagicMock()
    cur.fetchone.side_effect = [totals_row, inserted]
    return cur


class TestOverdrawGuard:
    def test_release_within_balance(self):
        totals = LedgerTotals(12_782_500, 12_000_000, 0, 12_782_500)
        check_no_overdraw(totals, amount_kobo=9_000_000, from_party="ESCROW")

    def test_release_beyond_balance(self):
        totals = LedgerTotals(12_782_500, 12_000_000, 11_000_000, 12_782_500)
        with pytest.raises(LedgerOverdrawError):
            check_no_overdraw(totals, amount_kobo=1_000_001, from_party="ESCROW")

    def test_customer_cannot_pay_more_than_total(self):
        totals = LedgerTotals(12_782_500, 0, 0, 12_500_000)
        with pytest.raises(LedgerOverdrawError):
            check_no_overdraw(totals, amount_kobo=282_501, from_party="CUSTOMER")

    def test_balance_from_entries(self):
        entries = [
            {"from_party": "CUSTOMER", "to_party": "ESCROW", "amount_kobo": 10_000_000},
            {"from_party": "CUSTOMER", "to_party": "ESCROW", "amount_kobo": 2_000_000},
            {"from_party": "CUSTOMER", "to_party": "REALTOR_WALLET", "amount_kobo": 500_000},
            {"from_party": "ESCROW", "to_party": "REALTOR_WALLET", "amount_kobo": 9_000_000},
        ]
        assert escrow_balance(entries) == 3_000_000


class TestRecord:
    def test_inserts_and_returns_entry(self):
        cur = _cursor((12_782_500, 0, 0, 0))
        entry = record(
            cur,
            booking_id="b-1",
            event_type="HOLD_ROOM_FEE",
            amount_kobo=10_000_000,
            from_party="CUSTOMER",
            to_party="ESCROW",
            triggered_by="SYSTEM",
        )
        assert entry["id"] == 41
        assert entry["event_type"] == "HOLD_ROOM_FEE"
        insert_sql = cur.execute.call_args_list[-1][0][0]
        assert "INSERT INTO escrow_events" in insert_sql

    def test_overdraw_writes_nothing(self):
        cur = _cursor((12_782_500, 1_000, 0, 1_000))
        with pytest.raises(LedgerOverdrawError):
            record(
                cur,
                booking_id="b-1",
                event_type="RELEASE_ROOM_FEE_SPLIT",
                amount_kobo=2_000,
                from_party="ESCROW",
                to_party="REALTOR_WALLET",
            )
        assert all("INSERT" not in c[0][0] for c in cur.execute.call_args_list)

    def test_zero_amount_rejected(self):
        with pytest.raises(ValidationError):
            record(
                MagicMock(),
                booking_id="b-1",
                event_type="HOLD_ROOM_FEE",
                amount_kobo=0,
                from_party="CUSTOMER",
                to_party="ESCROW",
            )

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValueError):
            record(
                MagicMock(),
                booking_id="b-1",
                event_type="EXTEND_STAY",
                amount_kobo=1,
                from_party="CUSTOMER",
                to_party="ESCROW",
            )
