"""Refund policy engine - tiered cancellation refunds.

Pure value computation. The lifecycle applies the result and writes the
matching ledger entries atomically with the cancellation.

Room fee shares come from the configured refund tiers. The platform share
absorbs rounding so customer + realtor + platform always equals the room fee.
Security deposit is always refunded in full; service and cleaning fees never are.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from stayza.domain.quote import round_kobo
from stayza.infra.finance_settings import DEFAULT_FINANCE_CONFIG, FinanceConfig

TIER_NONE = "NONE"


@dataclass(frozen=True)
class RefundCalculation:
    tier: str
    hours_until_checkin: Decimal
    can_cancel: bool
    customer_room_refund_kobo: int
    realtor_room_portion_kobo: int
    platform_room_portion_kobo: int
    security_deposit_refund_kobo: int
    service_fee_retained_kobo: int
    cleaning_fee_retained_kobo: int
    warning: str | None = None

    @property
    def customer_total_kobo(self) -> int:
        return self.customer_room_refund_kobo + self.security_deposit_refund_kobo

    @property
    def realtor_total_kobo(self) -> int:
        return self.realtor_room_portion_kobo

    @property
    def platform_total_kobo(self) -> int:
        return self.platform_room_portion_kobo + self.service_fee_retained_kobo

    def to_preview(self) -> dict:
        """Public cancellation preview payload."""
        return {
            "canCancel": self.can_cancel,
            "tier": self.tier,
            "hoursUntilCheckIn": float(self.hours_until_checkin),
            "perCategoryAmounts": {
                "roomFee": {
                    "customer": self.customer_room_refund_kobo,
                    "realtor": self.realtor_room_portion_kobo,
                    "platform": self.platform_room_portion_kobo,
                },
                "securityDeposit": {"customer": self.security_deposit_refund_kobo},
                "serviceFee": {"platform": self.service_fee_retained_kobo},
                "cleaningFee": {"realtor": self.cleaning_fee_retained_kobo},
            },
            "totals": {
                "customer": self.customer_total_kobo,
                "realtor": self.realtor_total_kobo,
                "platform": self.platform_total_kobo,
            },
            "warning": self.warning,
        }


def hours_until(checkin_at: datetime, now: datetime) -> Decimal:
    seconds = Decimal(str((checkin_at - now).total_seconds()))
    return (seconds / Decimal("3600")).quantize(Decimal("0.01"))


def calculate_refund(
    *,
    room_fee_kobo: int,
    cleaning_fee_kobo: int,
    security_deposit_kobo: int,
    service_fee_kobo: int,
    checkin_at: datetime,
    now: datetime,
    config: FinanceConfig = DEFAULT_FINANCE_CONFIG,
) -> RefundCalculation:
    """Compute the refund split for cancelling at ``now``.

    Tiers are matched in order of decreasing ``min_hours``; a tier with
    min_hours 0 only matches strictly before check-in. At or after check-in
    the tier is NONE and cancellation is not allowed.
    """
    hours = hours_until(checkin_at, now)

    tier = None
    if hours > 0:
        for candidate in config.refund_tiers:
            if hours >= candidate.min_hours:
                tier = candidate
                break

    if tier is None:
        return RefundCalculation(
            tier=TIER_NONE,
            hours_until_checkin=hours,
            can_cancel=False,
            customer_room_refund_kobo=0,
            realtor_room_portion_kobo=0,
            platform_room_portion_kobo=0,
            security_deposit_refund_kobo=0,
            service_fee_retained_kobo=0,
            cleaning_fee_retained_kobo=0,
            warning="Check-in time has passed; this booking can no longer be cancelled.",
        )

    customer = round_kobo(Decimal(room_fee_kobo) * tier.customer_share)
    realtor = round_kobo(Decimal(room_fee_kobo) * tier.realtor_share)
    platform = room_fee_kobo - customer - realtor

    warning = None
    if customer == 0 and room_fee_kobo > 0:
        warning = "No room fee refund applies this close to check-in; only the security deposit is returned."
    elif tier.customer_share < 1:
        warning = f"Cancelling now refunds {int(tier.customer_share * 100)}% of the room fee."

    return RefundCalculation(
        tier=tier.name,
        hours_until_checkin=hours,
        can_cancel=True,
        customer_room_refund_kobo=customer,
        realtor_room_portion_kobo=realtor,
        platform_room_portion_kobo=platform,
        security_deposit_refund_kobo=security_deposit_kobo,
        service_fee_retained_kobo=service_fee_kobo,
        cleaning_fee_retained_kobo=cleaning_fee_kobo,
        warning=warning,
    )
