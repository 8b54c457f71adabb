"""Shared test helpers for Stayza tests.

Plain functions (not fixtures) importable from conftest.py and test modules.
"""

from __future__ import annotations

import base64
import time
from datetime import date, datetime, timezone
from decimal import Decimal

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

TEST_ISSUER = "https://auth.stayza.example"
TEST_AUDIENCE = "stayza-api"
TEST_JWKS_URL = "https://auth.stayza.example/.well-known/jwks.json"


def generate_rsa_keypair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key, private_key.public_key()


def _b64_uint(n: int) -> str:
    byte_length = (n.bit_length() + 7) // 8
    return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()


def make_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Single-key JWKS document for public_key."""
    numbers = public_key.public_numbers()
    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": _b64_uint(numbers.n),
                "e": _b64_uint(numbers.e),
            }
        ]
    }


def make_token(
    private_key,
    *,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = TEST_ISSUER,
    aud: str = TEST_AUDIENCE,
    exp: int | None = None,
    azp: str | None = None,
) -> str:
    """RS256 JWT signed with private_key."""
    now = int(time.time())
    claims = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
    }
    if azp:
        claims["azp"] = azp
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


def oidc_env() -> dict[str, str]:
    return {
        "OIDC_ISSUER": TEST_ISSUER,
        "OIDC_AUDIENCE": TEST_AUDIENCE,
        "OIDC_JWKS_URL": TEST_JWKS_URL,
    }


def make_booking(**overrides) -> dict:
    """Booking row as returned by the bookings repository.

    Amounts follow the reference stay: 10,000,000 kobo room fee, 500,000
    cleaning fee, 2,000,000 deposit, local processing.
    """
    booking = {
        "id": "b-1",
        "property_id": "p-1",
        "realtor_id": "r-1",
        "guest_id": "g-1",
        "check_in_date": date(2026, 11, 10),
        "check_out_date": date(2026, 11, 12),
        "check_in_at": datetime(2026, 11, 10, 13, 0, tzinfo=timezone.utc),
        "check_out_at": datetime(2026, 11, 12, 10, 0, tzinfo=timezone.utc),
        "nights": 2,
        "currency": "NGN",
        "status": "ACTIVE",
        "stay_status": None,
        "is_blocked_dates": False,
        "room_fee_kobo": 10_000_000,
        "cleaning_fee_kobo": 500_000,
        "security_deposit_kobo": 2_000_000,
        "service_fee_kobo": 282_500,
        "service_fee_stayza_kobo": 115_000,
        "service_fee_processing_kobo": 167_500,
        "processing_mode": "local",
        "platform_fee_kobo": 1_000_000,
        "total_price_kobo": 12_782_500,
        "commission_base_rate": Decimal("0.10"),
        "commission_volume_reduction_rate": Decimal("0"),
        "commission_effective_rate": Decimal("0.10"),
        "monthly_volume_kobo": 0,
        "realtor_payout_kobo": 9_000_000,
        "checkin_confirmed_at": None,
        "checkin_confirmation_type": None,
        "checked_out_at": None,
        "guest_dispute_closes_at": None,
        "guest_dispute_opened": False,
        "realtor_dispute_closes_at": None,
        "realtor_dispute_opened": False,
        "dispute_subject": None,
        "dispute_claim_kobo": None,
        "dispute_reason": None,
        "refund_tier": None,
        "cancelled_at": None,
        "cancelled_by": None,
        "cancellation_reason": None,
        "completed_at": None,
        "notes": None,
    }
    booking.update(overrides)
    return booking


def make_payment(**overrides) -> dict:
    """Payment row as returned by the payments repository."""
    payment = {
        "id": "pay-1",
        "booking_id": "b-1",
        "amount_kobo": 12_782_500,
        "currency": "NGN",
        "status": "HELD",
        "provider": "paystack",
        "reference": "stz_abc123",
        "provider_transaction_id": None,
        "paid_at": None,
        "room_fee_in_escrow": True,
        "deposit_in_escrow": True,
        "room_fee_released_at": None,
        "deposit_released_at": None,
        "realtor_transfer_initiated_at": None,
        "realtor_transfer_completed_at": None,
        "realtor_transfer_reference": None,
        "realtor_transfer_failed": False,
        "metadata": {},
    }
    payment.update(overrides)
    return payment
