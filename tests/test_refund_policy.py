"""Tests for tiered cancellation refunds."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from stayza.domain.refund_policy import TIER_NONE, calculate_refund, hours_until

CHECKIN = datetime(2026, 11, 10, 13, 0, tzinfo=timezone.utc)


def _refund(hours_before: float, room_fee: int = 10_000_000):
    return calculate_refund(
        room_fee_kobo=room_fee,
        cleaning_fee_kobo=500_000,
        security_deposit_kobo=2_000_000,
        service_fee_kobo=282_500,
        checkin_at=CHECKIN,
        now=CHECKIN - timedelta(hours=hours_before),
    )


class TestTierSelection:
    def test_exactly_72_hours_is_early(self):
        assert _refund(72).tier == "EARLY"

    def test_just_under_72_hours_is_medium(self):
        assert _refund(71.99).tier == "MEDIUM"

    def test_exactly_24_hours_is_medium(self):
        assert _refund(24).tier == "MEDIUM"

    def test_inside_24_hours_is_late(self):
        assert _refund(10).tier == "LATE"

    def test_at_checkin_no_tier(self):
        refund = _refund(0)
        assert refund.tier == TIER_NONE
        assert refund.can_cancel is False
        assert refund.customer_total_kobo == 0

    def test_after_checkin_no_tier(self):
        assert _refund(-2).tier == TIER_NONE


class TestEarlyCancellation:
    """Guest cancels 72h before check-in."""

    def test_split(self):
        refund = _refund(72)
        assert refund.customer_room_refund_kobo == 9_000_000
        assert refund.realtor_room_portion_kobo == 700_000
        assert refund.platform_room_portion_kobo == 300_000
        assert refund.security_deposit_refund_kobo == 2_000_000
        assert refund.service_fee_retained_kobo == 282_500

    def test_totals(self):
        refund = _refund(72)
        assert refund.customer_total_kobo == 11_000_000
        assert refund.realtor_total_kobo == 700_000
        assert refund.platform_total_kobo == 300_000 + 282_500


class TestLateCancellation:
    """Guest cancels 10h before check-in."""

    def test_split(self):
        refund = _refund(10)
        assert refund.customer_room_refund_kobo == 0
        assert refund.realtor_room_portion_kobo == 8_000_000
        assert refund.platform_room_portion_kobo == 2_000_000
        assert refund.security_deposit_refund_kobo == 2_000_000
        assert refund.can_cancel is True
        assert refund.warning


class TestInvariants:
    def test_room_fee_shares_sum_exactly(self):
        for room_fee in (1, 7, 333_333, 10_000_001):
            for hours in (100, 30, 5):
                refund = _refund(hours, room_fee)
                total = (
                    refund.customer_room_refund_kobo
                    + refund.realtor_room_portion_kobo
                    + refund.platform_room_portion_kobo
                )
                assert total == room_fee

    def test_customer_share_non_increasing_toward_checkin(self):
        shares = [_refund(h).customer_room_refund_kobo for h in (200, 72, 50, 24, 10, 1)]
        assert shares == sorted(shares, reverse=True)

    def test_cleaning_fee_never_refunded(self):
        for hours in (100, 30, 5):
            refund = _refund(hours)
            assert refund.cleaning_fee_retained_kobo == 500_000


class TestPreview:
    def test_per_category_amounts(self):
        preview = _refund(72).to_preview()
        assert preview["canCancel"] is True
        assert preview["tier"] == "EARLY"
        assert preview["perCategoryAmounts"]["roomFee"]["customer"] == 9_000_000
        assert preview["perCategoryAmounts"]["securityDeposit"]["customer"] == 2_000_000
        assert preview["perCategoryAmounts"]["serviceFee"]["platform"] == 282_500
        assert preview["totals"]["customer"] == 11_000_000

    def test_hours_until_rounded(self):
        now = CHECKIN - timedelta(minutes=90)
        assert hours_until(CHECKIN, now) == Decimal("1.50")
