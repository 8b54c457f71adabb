"""Tests for OIDC JWT authentication."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
import requests
from fastapi.testclient import TestClient

from stayza.api.auth import CurrentUser
from stayza.api.factory import create_app

from tests.helpers import generate_rsa_keypair, make_jwks, make_token, oidc_env

ENDPOINT = "/admin/transfers/escalated"


def _jwks_response(jwks: dict) -> MagicMock:
    response = MagicMock()
    response.json.return_value = jwks
    return response


@pytest.fixture(scope="module")
def rsa_keypair():
    """Fixture providing RSA key pair."""
    return generate_rsa_keypair()


@pytest.fixture
def jwks(rsa_keypair):
    _, public_key = rsa_keypair
    return make_jwks(public_key)


@pytest.fixture
def mock_jwks_fetch(jwks):
    """Fixture that mocks the JWKS HTTP fetch."""
    with patch("stayza.api.auth.requests.get", return_value=_jwks_response(jwks)) as mock:
        yield mock


@pytest.fixture
def mock_db_user():
    """Fixture that mocks database user lookup (an admin)."""
    user_id = str(uuid4())

    def mock_get_user(external_subject: str):
        if external_subject == "user-123":
            return CurrentUser(
                id=user_id,
                external_subject="user-123",
                email="ops@stayza.example",
                name="Ops",
                role="admin",
            )
        return None

    with patch("stayza.api.auth._get_user_from_db", side_effect=mock_get_user) as mock:
        mock.user_id = user_id
        yield mock


@pytest.fixture
def client():
    with patch.dict("os.environ", oidc_env()), \
         patch("stayza.domain.settlement.list_escalated_transfers", return_value=[]):
        yield TestClient(create_app(role="public"))


def _get(client, token: str | None = None, scheme: str = "Bearer"):
    headers = {"Authorization": f"{scheme} {token}"} if token else {}
    return client.get(ENDPOINT, headers=headers)


class TestAuthNoToken:
    """Test 401 when no Authorization header."""

    def test_missing_auth_header(self, client):
        response = _get(client)
        assert response.status_code == 401
        assert "Missing authorization header" in response.json()["detail"]

    def test_oidc_not_configured(self, rsa_keypair):
        private_key, _ = rsa_keypair
        with patch.dict("os.environ", {}, clear=True):
            client = TestClient(create_app(role="public"))
            response = _get(client, make_token(private_key))
        assert response.status_code == 401


class TestAuthInvalidToken:
    """Test 401 for invalid tokens."""

    def test_malformed_token(self, client, mock_jwks_fetch):
        response = _get(client, "abc")
        assert response.status_code == 401
        assert "Invalid token" in response.json()["detail"]

    def test_invalid_bearer_format(self, client):
        response = _get(client, "abc", scheme="Basic")
        assert response.status_code == 401
        assert "Invalid authorization header" in response.json()["detail"]

    def test_expired_token(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key, exp=int(time.time()) - 3600))
        assert response.status_code == 401
        assert "Token expired" in response.json()["detail"]

    def test_wrong_issuer(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key, iss="https://wrong-issuer.example"))
        assert response.status_code == 401

    def test_wrong_audience(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key, aud="wrong-audience"))
        assert response.status_code == 401

    def test_unknown_kid(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key, kid="unknown-key"))
        assert response.status_code == 401
        # initial fetch plus one forced refresh
        assert mock_jwks_fetch.call_count == 2

    def test_signed_by_other_key(self, client, mock_jwks_fetch):
        other_private, _ = generate_rsa_keypair()
        response = _get(client, make_token(other_private))
        assert response.status_code == 401


class TestAuthUser:
    def test_user_not_found(self, client, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key, sub="unknown-user"))
        assert response.status_code == 403
        assert "User not found" in response.json()["detail"]

    def test_admin_allowed(self, client, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key))
        assert response.status_code == 200
        assert response.json() == {"transfers": []}

    def test_non_admin_forbidden(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        guest = CurrentUser(id="g-1", external_subject="user-123", email=None, name=None, role="guest")
        with patch("stayza.api.auth._get_user_from_db", return_value=guest):
            response = _get(client, make_token(private_key))
        assert response.status_code == 403
        assert "Admin role required" in response.json()["detail"]

    def test_unknown_role_forbidden(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        user = CurrentUser(id="x", external_subject="user-123", email=None, name=None, role="owner")
        with patch("stayza.api.auth._get_user_from_db", return_value=user):
            response = _get(client, make_token(private_key))
        assert response.status_code == 403


class TestAuthorizedParties:
    """Test azp claim validation."""

    def test_azp_valid(self, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        env = {**oidc_env(), "OIDC_AUTHORIZED_PARTIES": "allowed-app,another-app"}
        with patch.dict("os.environ", env), \
             patch("stayza.domain.settlement.list_escalated_transfers", return_value=[]):
            client = TestClient(create_app(role="public"))
            response = _get(client, make_token(private_key, azp="allowed-app"))
        assert response.status_code == 200

    def test_azp_invalid(self, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        env = {**oidc_env(), "OIDC_AUTHORIZED_PARTIES": "allowed-app"}
        with patch.dict("os.environ", env):
            client = TestClient(create_app(role="public"))
            response = _get(client, make_token(private_key, azp="unauthorized-app"))
        assert response.status_code == 401

    def test_azp_not_required_when_not_configured(self, client, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _get(client, make_token(private_key, azp="any-app"))
        assert response.status_code == 200


class TestJWKSCache:
    """Test JWKS caching behavior."""

    def test_jwks_cached(self, client, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = make_token(private_key)

        assert _get(client, token).status_code == 200
        assert _get(client, token).status_code == 200
        assert mock_jwks_fetch.call_count == 1

    def test_jwks_refresh_on_unknown_kid(self, client, rsa_keypair, jwks, mock_db_user):
        private_key, _ = rsa_keypair
        responses = [_jwks_response({"keys": []}), _jwks_response(jwks)]
        with patch("stayza.api.auth.requests.get", side_effect=responses) as fetch:
            response = _get(client, make_token(private_key))
        assert response.status_code == 200
        assert fetch.call_count == 2


class TestJWKSFetchError:
    """Test 503 when JWKS fetch fails."""

    @pytest.mark.parametrize("error", [requests.ConnectionError("down"), requests.Timeout("slow")])
    def test_jwks_unreachable(self, client, rsa_keypair, error):
        private_key, _ = rsa_keypair
        with patch("stayza.api.auth.requests.get", side_effect=error):
            response = _get(client, make_token(private_key))
        assert response.status_code == 503
        assert "Auth temporarily unavailable" in response.json()["detail"]
