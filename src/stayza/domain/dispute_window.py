"""Dispute window read model.

Two independent windows per booking: the guest window opens at check-in
confirmation, the realtor window at checkout. Deadlines are written once
when the window opens and are never recomputed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class DisputeWindow:
    deadline: datetime | None
    expired: bool
    opened: bool
    can_open: bool

    def to_dict(self) -> dict:
        return {
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "expired": self.expired,
            "opened": self.opened,
            "canOpen": self.can_open,
        }


def window_state(deadline: datetime | None, opened: bool, now: datetime) -> DisputeWindow:
    """Window state at ``now``. A window without a deadline has not started."""
    if deadline is None:
        return DisputeWindow(deadline=None, expired=False, opened=opened, can_open=False)
    expired = now >= deadline
    return DisputeWindow(
        deadline=deadline,
        expired=expired,
        opened=opened,
        can_open=not opened and not expired,
    )


def guest_window(booking: dict, now: datetime) -> DisputeWindow:
    return window_state(
        booking.get("guest_dispute_closes_at"),
        bool(booking.get("guest_dispute_opened")),
        now,
    )


def realtor_window(booking: dict, now: datetime) -> DisputeWindow:
    return window_state(
        booking.get("realtor_dispute_closes_at"),
        bool(booking.get("realtor_dispute_opened")),
        now,
    )


def windows_for(booking: dict, now: datetime) -> dict:
    return {
        "guest": guest_window(booking, now).to_dict(),
        "realtor": realtor_window(booking, now).to_dict(),
    }
