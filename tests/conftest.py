"""Shared pytest fixtures for Stayza escrow tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset the JWKS cache so keys from one test never leak into the next."""
    from stayza.api.auth import reset_jwks_cache

    reset_jwks_cache()
    yield
    reset_jwks_cache()
