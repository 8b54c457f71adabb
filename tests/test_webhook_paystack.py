"""Tests for the Paystack webhook endpoint (settlement mocked, no DB)."""

import json
import os
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from stayza.api.factory import create_app
from stayza.infra.hashing import compute_signature

SECRET = "sk_test_webhook"
BODY = {"event": "charge.success", "data": {"reference": "stz_abc123", "amount": 12_782_500}}


def _signed(body) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode()
    return raw, {"x-paystack-signature": compute_signature(raw, SECRET.encode())}


@pytest.fixture
def gateway():
    return MagicMock()


@pytest.fixture
def client(gateway):
    with patch.dict(os.environ, {"PAYSTACK_SECRET_KEY": SECRET}):
        yield TestClient(create_app(role="public", gateway=gateway))


class TestPaystackWebhook:
    def test_processed_returns_200(self, client, gateway):
        raw, headers = _signed(BODY)
        with patch(
            "stayza.api.routes.webhooks_paystack.process_webhook",
            return_value={"status": "confirmed", "booking_id": "b-1"},
        ) as process:
            response = client.post("/webhooks/paystack", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "confirmed"}
        event, body = process.call_args[0]
        assert event.data.reference == "stz_abc123"
        assert body == BODY
        assert process.call_args.kwargs["gateway"] is gateway
        assert process.call_args.kwargs["correlation_id"] == response.headers["X-Correlation-ID"]

    def test_duplicate_returns_200(self, client):
        raw, headers = _signed(BODY)
        with patch(
            "stayza.api.routes.webhooks_paystack.process_webhook",
            return_value={"status": "duplicate"},
        ):
            response = client.post("/webhooks/paystack", content=raw, headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_bad_signature_returns_401(self, client):
        raw, _ = _signed(BODY)
        with patch("stayza.api.routes.webhooks_paystack.process_webhook") as process:
            response = client.post(
                "/webhooks/paystack", content=raw, headers={"x-paystack-signature": "00" * 64}
            )
        assert response.status_code == 401
        process.assert_not_called()

    def test_missing_signature_returns_401(self, client):
        raw, _ = _signed(BODY)
        response = client.post("/webhooks/paystack", content=raw)
        assert response.status_code == 401

    def test_malformed_payload_returns_400(self, client):
        raw, headers = _signed({"event": "charge.success", "data": {"amount": 5}})
        with patch("stayza.api.routes.webhooks_paystack.process_webhook") as process:
            response = client.post("/webhooks/paystack", content=raw, headers=headers)
        assert response.status_code == 400
        process.assert_not_called()

    def test_handler_failure_returns_500(self, client):
        raw, headers = _signed(BODY)
        with patch(
            "stayza.api.routes.webhooks_paystack.process_webhook",
            side_effect=RuntimeError("db down"),
        ):
            response = client.post("/webhooks/paystack", content=raw, headers=headers)
        assert response.status_code == 500

    def test_unhandled_event_acknowledged(self, client):
        raw, headers = _signed({"event": "subscription.create", "data": {"id": 7}})
        with patch(
            "stayza.api.routes.webhooks_paystack.process_webhook",
            return_value={"status": "unhandled"},
        ):
            response = client.post("/webhooks/paystack", content=raw, headers=headers)
        assert response.status_code == 200


class TestWebhookSecretMissing:
    def test_returns_500(self):
        with patch.dict(os.environ, {}, clear=True):
            client = TestClient(create_app(role="public"))
            raw, headers = _signed(BODY)
            response = client.post("/webhooks/paystack", content=raw, headers=headers)
        assert response.status_code == 500
