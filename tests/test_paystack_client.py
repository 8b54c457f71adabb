"""Tests for the Paystack REST client (HTTP mocked)."""

import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from stayza.domain.errors import ExternalGatewayError, GatewayTimeoutError
from stayza.paystack.client import PaystackClient


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {"status": True, "data": {}}
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    return PaystackClient("sk_test_x", base_url="https://paystack.test", timeout=3, session=session)


class TestPaystackClient:
    def test_requires_secret(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="PAYSTACK_SECRET_KEY"):
                PaystackClient()

    def test_initiate_transfer(self, client, session):
        session.request.return_value = _response(
            body={"status": True, "data": {"transfer_code": "TRF_1", "status": "pending"}}
        )
        data = client.initiate_transfer(
            amount_kobo=9_000_000,
            recipient_code="RCP_1",
            reference="room_fee_b-1_e7",
            reason="Room fee payout",
        )
        assert data["transfer_code"] == "TRF_1"
        method, url = session.request.call_args[0]
        kwargs = session.request.call_args.kwargs
        assert (method, url) == ("POST", "https://paystack.test/transfer")
        assert kwargs["json"]["reference"] == "room_fee_b-1_e7"
        assert kwargs["json"]["amount"] == 9_000_000
        assert kwargs["headers"]["Authorization"] == "Bearer sk_test_x"
        assert kwargs["timeout"] == 3

    def test_refund_targets_original_charge(self, client, session):
        session.request.return_value = _response(body={"status": True, "data": {"status": "pending"}})
        client.refund(transaction_reference="stz_abc123", amount_kobo=11_000_000)
        assert session.request.call_args.kwargs["json"] == {
            "transaction": "stz_abc123",
            "amount": 11_000_000,
        }

    def test_timeout_raises_gateway_timeout(self, client, session):
        session.request.side_effect = requests.Timeout()
        with pytest.raises(GatewayTimeoutError):
            client.verify_transfer("ref", timeout=1)

    def test_connection_error_raises_gateway_error(self, client, session):
        session.request.side_effect = requests.ConnectionError()
        with pytest.raises(ExternalGatewayError) as exc_info:
            client.verify_transaction("ref")
        assert not isinstance(exc_info.value, GatewayTimeoutError)

    def test_rejected_request(self, client, session):
        session.request.return_value = _response(
            400, {"status": False, "message": "Insufficient balance"}
        )
        with pytest.raises(ExternalGatewayError) as exc_info:
            client.initiate_transfer(
                amount_kobo=1, recipient_code="RCP_1", reference="r", reason="x"
            )
        assert exc_info.value.status_code == 400
        assert "Insufficient balance" in exc_info.value.message

    def test_verify_transfer_uses_override_timeout(self, client, session):
        session.request.return_value = _response(body={"status": True, "data": {"status": "success"}})
        assert client.verify_transfer("ref_1", timeout=1.5)["status"] == "success"
        assert session.request.call_args.kwargs["timeout"] == 1.5

    def test_list_refunds_for_charge(self, client, session):
        session.request.return_value = _response(
            body={"status": True, "data": [{"id": 9, "merchant_note": "deposit_b-1_e8"}]}
        )
        refunds = client.list_refunds("4099260516", timeout=2)
        assert refunds == [{"id": 9, "merchant_note": "deposit_b-1_e8"}]
        method, url = session.request.call_args[0]
        assert (method, url) == ("GET", "https://paystack.test/refund?transaction=4099260516")

    def test_list_refunds_empty(self, client, session):
        session.request.return_value = _response(body={"status": True, "data": []})
        assert client.list_refunds("stz_abc123") == []
