"""Tests for repository SQL guards (cursor mocked, no DB)."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from stayza.infra.repositories.bookings_repository import (
    get_booking,
    insert_booking,
    list_sweep_candidates,
    update_booking,
)
from stayza.infra.repositories.transfers_repository import list_uncertain_refunds, update_transfer
from stayza.infra.repositories.webhook_events_repository import build_event_id, mark_processed


class TestBookingsRepository:
    def test_frozen_columns_not_updatable(self):
        cur = MagicMock()
        with pytest.raises(ValueError, match="room_fee_kobo"):
            update_booking(cur, "b-1", status="ACTIVE", room_fee_kobo=1)
        cur.execute.assert_not_called()

    def test_update_bumps_updated_at(self):
        cur = MagicMock()
        update_booking(cur, "b-1", status="ACTIVE", stay_status="CHECKED_IN")
        sql, params = cur.execute.call_args[0]
        assert "updated_at = now()" in sql
        assert params == ("ACTIVE", "CHECKED_IN", "b-1")

    def test_insert_rejects_unknown_columns(self):
        with pytest.raises(ValueError, match="unknown booking columns"):
            insert_booking(MagicMock(), id="b-1", extension_nights=2)

    def test_sweep_lock_skips_locked_rows(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        assert get_booking(cur, "b-1", for_update=True, skip_locked=True) is None
        assert cur.execute.call_args[0][0].endswith("FOR UPDATE SKIP LOCKED")

    def test_sweep_candidates_per_kind(self):
        cur = MagicMock()
        cur.fetchall.side_effect = [[("b-1",)], [], [("b-2",), ("b-3",)], [], []]
        now = datetime(2026, 11, 10, 16, 0, tzinfo=timezone.utc)
        candidates = list_sweep_candidates(cur, now=now, auto_checkin_delay=timedelta(minutes=30), limit=5)

        assert candidates == {
            "auto_checkin": ["b-1"],
            "auto_checkout": [],
            "room_fee_release": ["b-2", "b-3"],
            "deposit_release": [],
            "blocked_dates_complete": [],
        }
        first_params = cur.execute.call_args_list[0][0][1]
        assert first_params == (timedelta(minutes=30), now, 5)


class TestTransfersRepository:
    def test_new_reference_appended_to_history(self):
        cur = MagicMock()
        update_transfer(cur, "t-1", reference="room_fee_b-1_e5_r1", attempts=1)
        sql, params = cur.execute.call_args[0]
        assert "reference_history = array_append(reference_history, %s)" in sql
        assert params == ("room_fee_b-1_e5_r1", "room_fee_b-1_e5_r1", 1, "t-1")

    def test_metadata_is_merged(self):
        cur = MagicMock()
        update_transfer(cur, "t-1", metadata={"verification_deferred": True})
        sql, params = cur.execute.call_args[0]
        assert "COALESCE(metadata, '{}'::jsonb) || %s::jsonb" in sql
        assert params == ('{"verification_deferred": true}', "t-1")

    def test_immutable_columns_rejected(self):
        with pytest.raises(ValueError):
            update_transfer(MagicMock(), "t-1", amount_kobo=1)

    def test_uncertain_refunds_query(self):
        cur = MagicMock()
        cur.fetchall.return_value = [("t-1",)]
        assert list_uncertain_refunds(cur, limit=10) == ["t-1"]
        sql, params = cur.execute.call_args[0]
        assert "kind = 'refund'" in sql
        assert "dispatched_at IS NOT NULL" in sql
        assert "metadata->>'dispatch_uncertain'" in sql
        assert params == (10,)


class TestWebhookEventsRepository:
    def test_event_id(self):
        assert build_event_id("paystack", "charge.success", "stz_1") == "paystack-charge.success-stz_1"

    @pytest.mark.parametrize("rowcount,expected", [(1, True), (0, False)])
    def test_mark_processed_reports_race(self, rowcount, expected):
        cur = MagicMock()
        cur.rowcount = rowcount
        result = mark_processed(
            cur,
            provider="paystack",
            event_id="paystack-charge.success-stz_1",
            event_type="charge.success",
            payload={"event": "charge.success"},
        )
        assert result is expected
        assert "ON CONFLICT (event_id) WHERE status = 'PROCESSED' DO NOTHING" in cur.execute.call_args[0][0]
