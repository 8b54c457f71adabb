"""Who is acting on a booking."""

from __future__ import annotations

from dataclasses import dataclass

ROLE_GUEST = "guest"
ROLE_REALTOR = "realtor"
ROLE_ADMIN = "admin"
ROLE_SYSTEM = "system"

ROLES = frozenset({ROLE_GUEST, ROLE_REALTOR, ROLE_ADMIN, ROLE_SYSTEM})


@dataclass(frozen=True)
class Actor:
    id: str
    role: str

    @property
    def ledger_label(self) -> str:
        """Value stored in escrow_events.triggered_by."""
        if self.role == ROLE_SYSTEM:
            return "SYSTEM"
        return f"{self.role}:{self.id}"


SYSTEM_ACTOR = Actor(id="system", role=ROLE_SYSTEM)
WEBHOOK_ACTOR = Actor(id="paystack", role=ROLE_SYSTEM)
