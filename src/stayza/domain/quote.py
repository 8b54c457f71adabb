"""Quote calculator - frozen fee breakdown and commission snapshot.

Pure and deterministic: the same inputs always give the same quote, so the
function serves live previews and the copy frozen onto a booking at creation.
All amounts are integer kobo; every component is rounded on its own.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

from stayza.domain.errors import ValidationError
from stayza.infra.finance_settings import (
    DEFAULT_FINANCE_CONFIG,
    FeeComponent,
    FinanceConfig,
)


@dataclass(frozen=True)
class CommissionSnapshot:
    base_rate: Decimal
    volume_reduction_rate: Decimal
    effective_rate: Decimal
    monthly_volume_kobo: int
    platform_fee_kobo: int
    realtor_payout_kobo: int


@dataclass(frozen=True)
class ServiceFeeBreakdown:
    stayza_kobo: int
    processing_kobo: int
    total_kobo: int
    processing_mode: str


@dataclass(frozen=True)
class Quote:
    nights: int
    room_fee_kobo: int
    cleaning_fee_kobo: int
    security_deposit_kobo: int
    service_fee: ServiceFeeBreakdown
    commission: CommissionSnapshot
    total_payable_kobo: int
    currency: str

    @property
    def service_fee_kobo(self) -> int:
        return self.service_fee.total_kobo

    @property
    def platform_fee_kobo(self) -> int:
        return self.commission.platform_fee_kobo

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data["commission"].items():
            if isinstance(value, Decimal):
                data["commission"][key] = str(value)
        return data


def round_kobo(value: Decimal) -> int:
    """Round a Decimal kobo value half-up to a whole kobo."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def component_fee(component: FeeComponent, subtotal_kobo: int) -> int:
    """Fee for one service-fee component.

    The variable part is capped only once the subtotal reaches the trigger.
    """
    variable = round_kobo(Decimal(subtotal_kobo) * component.percent)
    if (
        component.cap_variable_kobo is not None
        and component.cap_trigger_kobo is not None
        and subtotal_kobo >= component.cap_trigger_kobo
    ):
        variable = min(variable, component.cap_variable_kobo)
    return variable + component.fixed_kobo


def base_commission_rate(room_fee_kobo: int, config: FinanceConfig) -> Decimal:
    for tier in config.commission_tiers:
        if room_fee_kobo >= tier.min_kobo and (
            tier.max_kobo is None or room_fee_kobo <= tier.max_kobo
        ):
            return tier.rate
    # Contiguous tiers starting at 0 make this unreachable for valid configs
    return config.commission_tiers[-1].rate


def volume_reduction_rate(monthly_volume_kobo: int, config: FinanceConfig) -> Decimal:
    reduction = Decimal("0")
    for discount in config.monthly_discounts:
        if monthly_volume_kobo >= discount.min_volume_kobo:
            reduction = discount.reduction_rate
    return min(reduction, config.monthly_discount_cap_rate)


def commission_snapshot(
    room_fee_kobo: int,
    monthly_volume_kobo: int,
    config: FinanceConfig = DEFAULT_FINANCE_CONFIG,
) -> CommissionSnapshot:
    base = base_commission_rate(room_fee_kobo, config)
    reduction = volume_reduction_rate(monthly_volume_kobo, config)
    effective = max(base - reduction, config.commission_floor_rate, Decimal("0"))
    platform_fee = round_kobo(Decimal(room_fee_kobo) * effective)
    return CommissionSnapshot(
        base_rate=base,
        volume_reduction_rate=reduction,
        effective_rate=effective,
        monthly_volume_kobo=monthly_volume_kobo,
        platform_fee_kobo=platform_fee,
        realtor_payout_kobo=room_fee_kobo - platform_fee,
    )


def service_fee(
    subtotal_kobo: int,
    processing_mode: str,
    config: FinanceConfig = DEFAULT_FINANCE_CONFIG,
) -> ServiceFeeBreakdown:
    component = config.processing_fees.get(processing_mode)
    if component is None:
        raise ValidationError(
            f"unknown processing mode {processing_mode!r}",
            code="invalid_processing_mode",
        )
    stayza = component_fee(config.stayza_fee, subtotal_kobo)
    processing = component_fee(component, subtotal_kobo)
    return ServiceFeeBreakdown(
        stayza_kobo=stayza,
        processing_kobo=processing,
        total_kobo=stayza + processing,
        processing_mode=processing_mode,
    )


def calculate_quote(
    *,
    price_per_night_kobo: int,
    nights: int,
    cleaning_fee_kobo: int = 0,
    security_deposit_kobo: int = 0,
    monthly_volume_kobo: int = 0,
    processing_mode: str = "local",
    config: FinanceConfig = DEFAULT_FINANCE_CONFIG,
) -> Quote:
    """Compute the full quote for a stay.

    Raises:
        ValidationError: For non-positive stays or negative amounts.
    """
    if nights <= 0:
        raise ValidationError("stay must be at least one night", code="invalid_dates")
    for name, amount in (
        ("price_per_night_kobo", price_per_night_kobo),
        ("cleaning_fee_kobo", cleaning_fee_kobo),
        ("security_deposit_kobo", security_deposit_kobo),
        ("monthly_volume_kobo", monthly_volume_kobo),
    ):
        if amount < 0:
            raise ValidationError(f"{name} must not be negative", code="invalid_amount")

    room_fee = price_per_night_kobo * nights
    fees = service_fee(room_fee + cleaning_fee_kobo, processing_mode, config)
    commission = commission_snapshot(room_fee, monthly_volume_kobo, config)

    return Quote(
        nights=nights,
        room_fee_kobo=room_fee,
        cleaning_fee_kobo=cleaning_fee_kobo,
        security_deposit_kobo=security_deposit_kobo,
        service_fee=fees,
        commission=commission,
        total_payable_kobo=room_fee + cleaning_fee_kobo + fees.total_kobo + security_deposit_kobo,
        currency=config.currency,
    )
