"""Platform finance configuration.

Provides the commission tiers, volume discounts, service-fee components,
refund tiers and dispute durations the engine computes with. Values come
from code defaults, overridden per key by active rows in platform_settings.

Strict mode (FINANCE_CONFIG_STRICT=1) refuses to run with an invalid override;
otherwise the invalid key is logged and its default is used.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal
from typing import Any

from stayza.observability.logging import get_logger
from stayza.observability.redaction import safe_log_context

logger = get_logger(__name__)

COMMISSION_TIERS_KEY = "finance.commission.tiers.v1"
MONTHLY_DISCOUNTS_KEY = "finance.commission.monthly_discounts.v1"
DISCOUNT_CAP_KEY = "finance.commission.cap.v1"
SERVICE_FEE_KEY = "finance.service_fee.v1"
REFUND_TIERS_KEY = "finance.refund_tiers.v1"

_MAX_TIER_RATE = Decimal("0.25")
_MAX_DISCOUNT_RATE = Decimal("0.05")


class FinanceConfigError(Exception):
    """Raised in strict mode when a stored finance override is invalid."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass(frozen=True)
class CommissionTier:
    """Base commission rate for room fees within [min_kobo, max_kobo]."""

    min_kobo: int
    max_kobo: int | None
    rate: Decimal


@dataclass(frozen=True)
class VolumeDiscount:
    """Rate reduction once monthly confirmed volume reaches min_volume_kobo."""

    min_volume_kobo: int
    reduction_rate: Decimal


@dataclass(frozen=True)
class FeeComponent:
    """percent x subtotal (variable, optionally capped) + fixed."""

    percent: Decimal
    fixed_kobo: int
    cap_variable_kobo: int | None = None
    cap_trigger_kobo: int | None = None


@dataclass(frozen=True)
class RefundTier:
    """Room-fee shares for cancellations at least min_hours before check-in."""

    name: str
    min_hours: Decimal
    customer_share: Decimal
    realtor_share: Decimal
    platform_share: Decimal


@dataclass(frozen=True)
class FinanceConfig:
    commission_tiers: tuple[CommissionTier, ...]
    monthly_discounts: tuple[VolumeDiscount, ...]
    monthly_discount_cap_rate: Decimal
    commission_floor_rate: Decimal
    stayza_fee: FeeComponent
    processing_fees: dict[str, FeeComponent]
    refund_tiers: tuple[RefundTier, ...]
    guest_dispute_window: timedelta = timedelta(hours=1)
    realtor_dispute_window: timedelta = timedelta(hours=4, minutes=10)
    auto_checkin_delay: timedelta = timedelta(minutes=30)
    transfer_retry_cap: int = 2
    gateway_timeout_seconds: float = 8.0
    currency: str = "NGN"
    processing_modes: tuple[str, ...] = field(default=("local", "international"))


DEFAULT_FINANCE_CONFIG = FinanceConfig(
    commission_tiers=(
        CommissionTier(0, 50_000_000, Decimal("0.10")),
        CommissionTier(50_000_001, 200_000_000, Decimal("0.07")),
        CommissionTier(200_000_001, None, Decimal("0.05")),
    ),
    monthly_discounts=(
        VolumeDiscount(500_000_000, Decimal("0.005")),
        VolumeDiscount(1_000_000_000, Decimal("0.01")),
        VolumeDiscount(2_000_000_000, Decimal("0.015")),
    ),
    monthly_discount_cap_rate=Decimal("0.02"),
    commission_floor_rate=Decimal("0"),
    stayza_fee=FeeComponent(Decimal("0.01"), 10_000, 133_300, 13_333_300),
    processing_fees={
        "local": FeeComponent(Decimal("0.015"), 10_000, 200_000, 13_333_300),
        "international": FeeComponent(Decimal("0.039"), 10_000),
    },
    refund_tiers=(
        RefundTier("EARLY", Decimal("72"), Decimal("0.90"), Decimal("0.07"), Decimal("0.03")),
        RefundTier("MEDIUM", Decimal("24"), Decimal("0.70"), Decimal("0.20"), Decimal("0.10")),
        RefundTier("LATE", Decimal("0"), Decimal("0"), Decimal("0.80"), Decimal("0.20")),
    ),
)


def validate_finance_config(config: FinanceConfig) -> list[str]:
    """Return a list of human-readable problems (empty when valid)."""
    errors: list[str] = []

    tiers = config.commission_tiers
    if not tiers:
        errors.append("commission tiers must not be empty")
    else:
        if tiers[0].min_kobo != 0:
            errors.append("first commission tier must start at 0")
        if tiers[-1].max_kobo is not None:
            errors.append("last commission tier must be open ended")
        for prev, nxt in zip(tiers, tiers[1:]):
            if prev.max_kobo is None or nxt.min_kobo != prev.max_kobo + 1:
                errors.append(
                    f"commission tiers not contiguous at {nxt.min_kobo}"
                )
        for tier in tiers:
            if not Decimal("0") <= tier.rate <= _MAX_TIER_RATE:
                errors.append(f"commission rate {tier.rate} out of range")
            if tier.max_kobo is not None and tier.max_kobo < tier.min_kobo:
                errors.append(f"commission tier {tier.min_kobo} has max below min")

    discounts = config.monthly_discounts
    for prev, nxt in zip(discounts, discounts[1:]):
        if nxt.min_volume_kobo <= prev.min_volume_kobo:
            errors.append("monthly discount thresholds must be strictly increasing")
    for discount in discounts:
        if not Decimal("0") <= discount.reduction_rate <= _MAX_DISCOUNT_RATE:
            errors.append(f"monthly discount {discount.reduction_rate} out of range")

    if not Decimal("0") <= config.monthly_discount_cap_rate <= _MAX_DISCOUNT_RATE:
        errors.append("monthly discount cap out of range")
    if not Decimal("0") <= config.commission_floor_rate <= _MAX_TIER_RATE:
        errors.append("commission floor out of range")

    refund_tiers = config.refund_tiers
    if not refund_tiers:
        errors.append("refund tiers must not be empty")
    for prev, nxt in zip(refund_tiers, refund_tiers[1:]):
        if nxt.min_hours >= prev.min_hours:
            errors.append("refund tier thresholds must be strictly decreasing")
    for tier in refund_tiers:
        total = tier.customer_share + tier.realtor_share + tier.platform_share
        if total != Decimal("1"):
            errors.append(f"refund tier {tier.name} shares sum to {total}")
        if min(tier.customer_share, tier.realtor_share, tier.platform_share) < 0:
            errors.append(f"refund tier {tier.name} has a negative share")

    return errors


def _is_strict() -> bool:
    return os.environ.get("FINANCE_CONFIG_STRICT", "").lower() in ("1", "true", "yes")


def _parse_commission_tiers(value: list[dict]) -> tuple[CommissionTier, ...]:
    return tuple(
        CommissionTier(
            min_kobo=int(item["min_kobo"]),
            max_kobo=int(item["max_kobo"]) if item.get("max_kobo") is not None else None,
            rate=Decimal(str(item["rate"])),
        )
        for item in value
    )


def _parse_monthly_discounts(value: list[dict]) -> tuple[VolumeDiscount, ...]:
    return tuple(
        VolumeDiscount(
            min_volume_kobo=int(item["min_volume_kobo"]),
            reduction_rate=Decimal(str(item["reduction_rate"])),
        )
        for item in value
    )


def _parse_fee_component(value: dict) -> FeeComponent:
    cap = value.get("cap_variable_kobo")
    trigger = value.get("cap_trigger_kobo")
    return FeeComponent(
        percent=Decimal(str(value["percent"])),
        fixed_kobo=int(value["fixed_kobo"]),
        cap_variable_kobo=int(cap) if cap is not None else None,
        cap_trigger_kobo=int(trigger) if trigger is not None else None,
    )


def _parse_refund_tiers(value: list[dict]) -> tuple[RefundTier, ...]:
    return tuple(
        RefundTier(
            name=str(item["name"]),
            min_hours=Decimal(str(item["min_hours"])),
            customer_share=Decimal(str(item["customer_share"])),
            realtor_share=Decimal(str(item["realtor_share"])),
            platform_share=Decimal(str(item["platform_share"])),
        )
        for item in value
    )


def _apply_override(config: FinanceConfig, key: str, value: Any) -> FinanceConfig:
    if key == COMMISSION_TIERS_KEY:
        return replace(config, commission_tiers=_parse_commission_tiers(value))
    if key == MONTHLY_DISCOUNTS_KEY:
        return replace(config, monthly_discounts=_parse_monthly_discounts(value))
    if key == DISCOUNT_CAP_KEY:
        return replace(config, monthly_discount_cap_rate=Decimal(str(value["rate"])))
    if key == SERVICE_FEE_KEY:
        processing = dict(config.processing_fees)
        for mode, component in (value.get("processing") or {}).items():
            processing[mode] = _parse_fee_component(component)
        stayza_fee = config.stayza_fee
        if value.get("stayza"):
            stayza_fee = _parse_fee_component(value["stayza"])
        return replace(
            config,
            stayza_fee=stayza_fee,
            processing_fees=processing,
            processing_modes=tuple(processing),
        )
    if key == REFUND_TIERS_KEY:
        return replace(config, refund_tiers=_parse_refund_tiers(value))
    return config


def load_finance_config(cur) -> FinanceConfig:
    """Load finance configuration: defaults plus active platform_settings rows.

    Each key is applied and validated on its own so one bad override does not
    discard the others in degraded mode.

    Raises:
        FinanceConfigError: In strict mode, when an override is invalid.
    """
    cur.execute(
        """
        SELECT key, value FROM platform_settings
        WHERE is_active = true AND key LIKE 'finance.%%'
        ORDER BY key
        """
    )
    rows = cur.fetchall()

    config = DEFAULT_FINANCE_CONFIG
    for key, value in rows:
        try:
            candidate = _apply_override(config, key, value)
            errors = validate_finance_config(candidate)
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            errors = [f"{key}: unparseable ({exc})"]
            candidate = config

        if errors:
            if _is_strict():
                raise FinanceConfigError(errors)
            logger.warning(
                "invalid finance override ignored",
                extra={"extra_fields": safe_log_context(key=key, errors=errors)},
            )
            continue
        config = candidate

    return config
