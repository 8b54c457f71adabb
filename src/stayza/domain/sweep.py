"""Periodic sweep for time-triggered transitions.

Candidates are read without locks; every action re-locks its booking with
SKIP LOCKED and re-checks eligibility, so overlapping sweeps and concurrent
user actions are safe. Refunds with an unknown outcome are looked up and
undispatched transfers are retried at the end.
"""

from __future__ import annotations

from datetime import datetime

from stayza.domain import lifecycle
from stayza.domain.actors import SYSTEM_ACTOR
from stayza.domain.errors import EngineError
from stayza.domain.settlement import (
    dispatch_pending_transfers,
    dispatch_transfers,
    reconcile_uncertain_refunds,
)
from stayza.infra.db import txn
from stayza.infra.finance_settings import FinanceConfig, load_finance_config
from stayza.infra.repositories.bookings_repository import list_sweep_candidates
from stayza.infra.time import utc_now
from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context

logger = get_logger(__name__)

_SENT_STATUSES = frozenset({"dispatched", "confirmed"})


def _actions(now: datetime, config: FinanceConfig, correlation_id: str | None) -> dict:
    return {
        "auto_checkin": lambda booking_id: lifecycle.confirm_checkin(
            booking_id, actor=SYSTEM_ACTOR, now=now, config=config, correlation_id=correlation_id
        ),
        "auto_checkout": lambda booking_id: lifecycle.confirm_checkout(
            booking_id, actor=SYSTEM_ACTOR, now=now, config=config, correlation_id=correlation_id
        ),
        "room_fee_release": lambda booking_id: lifecycle.release_room_fee_split(
            booking_id, now=now, correlation_id=correlation_id
        ),
        "deposit_release": lambda booking_id: lifecycle.release_security_deposit(
            booking_id, now=now, correlation_id=correlation_id
        ),
        "blocked_dates_complete": lambda booking_id: lifecycle.complete_blocked_dates_booking(
            booking_id, now=now
        ),
    }


def run_sweep(
    *,
    gateway=None,
    now: datetime | None = None,
    config: FinanceConfig | None = None,
    limit: int = 100,
    correlation_id: str | None = None,
) -> dict:
    """Run every due transition once.

    Returns:
        Per-kind counts of applied actions plus ``errors`` and ``dispatched``.
    """
    now = now or utc_now()
    with txn() as cur:
        cfg = config if config is not None else load_finance_config(cur)
        candidates = list_sweep_candidates(
            cur, now=now, auto_checkin_delay=cfg.auto_checkin_delay, limit=limit
        )

    actions = _actions(now, cfg, correlation_id)
    summary: dict[str, int] = {kind: 0 for kind in actions}
    summary["errors"] = 0
    transfer_ids: list[str] = []

    for kind, booking_ids in candidates.items():
        for booking_id in booking_ids:
            try:
                result = actions[kind](booking_id)
            except EngineError as exc:
                # Lost a race with a user action; the re-check rejected it
                logger.info(
                    "sweep action skipped",
                    extra={
                        "extra_fields": safe_log_context(
                            correlationId=correlation_id,
                            kind=kind,
                            booking_id=booking_id,
                            code=exc.code,
                        )
                    },
                )
                continue
            except Exception:
                summary["errors"] += 1
                logger.exception(
                    "sweep action failed",
                    extra={
                        "extra_fields": safe_log_context(
                            correlationId=correlation_id, kind=kind, booking_id=booking_id
                        )
                    },
                )
                continue
            if result.get("status") not in ("skipped", "not_eligible"):
                summary[kind] += 1
            transfer_ids.extend(result.get("transfer_ids", []))

    dispatched = 0
    reconciled = 0
    if gateway is not None:
        results = dispatch_transfers(transfer_ids, gateway, config=cfg, correlation_id=correlation_id)
        refund_checks = reconcile_uncertain_refunds(gateway, now=now, config=cfg, correlation_id=correlation_id)
        reconciled = sum(1 for r in refund_checks if r["status"] in _SENT_STATUSES)
        results += dispatch_pending_transfers(gateway, config=cfg, correlation_id=correlation_id)
        # One transfer can appear twice: created here, timed out, then picked up as pending
        dispatched = len({r["transfer_id"] for r in results if r.get("status") in _SENT_STATUSES})
    summary["dispatched"] = dispatched
    summary["refunds_reconciled"] = reconciled

    logger.info(
        "sweep finished",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, **summary)},
    )
    return summary
