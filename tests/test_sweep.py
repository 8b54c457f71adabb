"""Tests for the periodic sweep (lifecycle and repositories mocked)."""

from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from stayza.domain.errors import ConflictError
from stayza.domain.sweep import run_sweep
from stayza.infra.finance_settings import DEFAULT_FINANCE_CONFIG

NOW = datetime(2026, 11, 10, 16, 0, tzinfo=timezone.utc)


@contextmanager
def _mock_txn():
    yield MagicMock()


def _candidates(**kinds):
    base = {
        "auto_checkin": [],
        "auto_checkout": [],
        "room_fee_release": [],
        "deposit_release": [],
        "blocked_dates_complete": [],
    }
    base.update(kinds)
    return base


@pytest.fixture
def lifecycle_mock():
    with patch("stayza.domain.sweep.txn", _mock_txn), \
         patch("stayza.domain.sweep.lifecycle") as lifecycle:
        yield lifecycle


class TestRunSweep:
    def test_counts_applied_actions(self, lifecycle_mock):
        lifecycle_mock.confirm_checkin.return_value = {"status": "checked_in"}
        lifecycle_mock.release_room_fee_split.side_effect = [
            {"status": "released", "transfer_ids": ["t-1"]},
            {"status": "skipped"},
        ]
        candidates = _candidates(auto_checkin=["b-1"], room_fee_release=["b-2", "b-3"])
        with patch("stayza.domain.sweep.list_sweep_candidates", return_value=candidates):
            summary = run_sweep(now=NOW, config=DEFAULT_FINANCE_CONFIG)

        assert summary["auto_checkin"] == 1
        assert summary["room_fee_release"] == 1
        assert summary["errors"] == 0
        assert summary["dispatched"] == 0
        _, kwargs = lifecycle_mock.confirm_checkin.call_args
        assert kwargs["now"] == NOW

    def test_engine_error_is_skipped_not_counted(self, lifecycle_mock):
        lifecycle_mock.confirm_checkout.side_effect = ConflictError("already", code="already_checked_out")
        with patch(
            "stayza.domain.sweep.list_sweep_candidates",
            return_value=_candidates(auto_checkout=["b-1"]),
        ):
            summary = run_sweep(now=NOW, config=DEFAULT_FINANCE_CONFIG)

        assert summary["auto_checkout"] == 0
        assert summary["errors"] == 0

    def test_unexpected_error_counted_and_sweep_continues(self, lifecycle_mock):
        lifecycle_mock.release_security_deposit.side_effect = [
            RuntimeError("db gone"),
            {"status": "completed", "transfer_ids": []},
        ]
        with patch(
            "stayza.domain.sweep.list_sweep_candidates",
            return_value=_candidates(deposit_release=["b-1", "b-2"]),
        ):
            summary = run_sweep(now=NOW, config=DEFAULT_FINANCE_CONFIG)

        assert summary["errors"] == 1
        assert summary["deposit_release"] == 1

    def test_dispatches_new_and_pending_transfers(self, lifecycle_mock):
        lifecycle_mock.release_room_fee_split.return_value = {
            "status": "released",
            "transfer_ids": ["t-1"],
        }
        gateway = MagicMock()
        pending = [
            {"status": "dispatched", "transfer_id": "t-1"},
            {"status": "confirmed", "transfer_id": "t-2"},
            {"status": "timeout", "transfer_id": "t-3"},
        ]
        with patch(
            "stayza.domain.sweep.list_sweep_candidates",
            return_value=_candidates(room_fee_release=["b-1"]),
        ), patch(
            "stayza.domain.sweep.dispatch_transfers",
            return_value=[{"status": "timeout", "transfer_id": "t-1"}],
        ) as dispatch, \
             patch("stayza.domain.sweep.reconcile_uncertain_refunds", return_value=[]), \
             patch("stayza.domain.sweep.dispatch_pending_transfers", return_value=pending):
            summary = run_sweep(gateway=gateway, now=NOW, config=DEFAULT_FINANCE_CONFIG)

        dispatch.assert_called_once()
        assert dispatch.call_args[0][0] == ["t-1"]
        assert summary["dispatched"] == 2

    def test_transfer_sent_twice_in_one_sweep_counted_once(self, lifecycle_mock):
        lifecycle_mock.release_security_deposit.return_value = {
            "status": "completed",
            "transfer_ids": ["t-1"],
        }
        with patch(
            "stayza.domain.sweep.list_sweep_candidates",
            return_value=_candidates(deposit_release=["b-1"]),
        ), patch(
            "stayza.domain.sweep.dispatch_transfers",
            return_value=[{"status": "dispatched", "transfer_id": "t-1"}],
        ), patch("stayza.domain.sweep.reconcile_uncertain_refunds", return_value=[]), \
             patch(
                 "stayza.domain.sweep.dispatch_pending_transfers",
                 return_value=[{"status": "dispatched", "transfer_id": "t-1"}],
             ):
            summary = run_sweep(gateway=MagicMock(), now=NOW, config=DEFAULT_FINANCE_CONFIG)

        assert summary["dispatched"] == 1

    def test_uncertain_refunds_reconciled_before_pending_dispatch(self, lifecycle_mock):
        calls = []

        def reconcile(gateway, **kwargs):
            calls.append(("reconcile", kwargs["now"]))
            return [
                {"status": "confirmed", "transfer_id": "t-9"},
                {"status": "uncertain", "transfer_id": "t-8"},
            ]

        def pending(gateway, **kwargs):
            calls.append(("pending", None))
            return []

        with patch("stayza.domain.sweep.list_sweep_candidates", return_value=_candidates()), \
             patch("stayza.domain.sweep.dispatch_transfers", return_value=[]), \
             patch("stayza.domain.sweep.reconcile_uncertain_refunds", side_effect=reconcile), \
             patch("stayza.domain.sweep.dispatch_pending_transfers", side_effect=pending):
            summary = run_sweep(gateway=MagicMock(), now=NOW, config=DEFAULT_FINANCE_CONFIG)

        assert calls == [("reconcile", NOW), ("pending", None)]
        assert summary["refunds_reconciled"] == 1

    def test_loads_config_when_not_given(self, lifecycle_mock):
        with patch("stayza.domain.sweep.load_finance_config", return_value=DEFAULT_FINANCE_CONFIG) as load, \
             patch("stayza.domain.sweep.list_sweep_candidates", return_value=_candidates()) as listing:
            run_sweep(now=NOW)

        load.assert_called_once()
        assert listing.call_args.kwargs["auto_checkin_delay"] == DEFAULT_FINANCE_CONFIG.auto_checkin_delay
