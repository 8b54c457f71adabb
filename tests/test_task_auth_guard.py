"""Tests that all settlement task endpoints require authentication.

Verifies that endpoints guarded by require_task_auth return 401 when
called without credentials, and reach the handler when auth passes.
"""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from stayza.api.factory import create_app
from stayza.api.task_auth import INTERNAL_SECRET_HEADER, extract_bearer_token, verify_task_oidc

TASK_ENDPOINTS = [
    ("/tasks/settlement/sweep", {}),
    ("/tasks/settlement/dispatch-transfer", {"transfer_id": "t-1"}),
    ("/tasks/settlement/reconcile-transfer", {"transfer_id": "t-1", "reference": "r"}),
]


@pytest.fixture
def gateway():
    return MagicMock()


@pytest.fixture
def worker_client(gateway):
    """Create a test client for the worker app (no auth mock)."""
    app = create_app(role="worker", gateway=gateway)
    return TestClient(app)


class TestTaskEndpointsRequireAuth:
    @pytest.mark.parametrize("path,body", TASK_ENDPOINTS)
    def test_no_auth_returns_401(self, worker_client, path, body):
        with patch.dict(os.environ, {"TASKS_OIDC_AUDIENCE": "https://worker.example"}):
            response = worker_client.post(path, json=body)
        assert response.status_code == 401

    @pytest.mark.parametrize("path,body", TASK_ENDPOINTS)
    def test_invalid_bearer_returns_401(self, worker_client, path, body):
        with patch.dict(os.environ, {"TASKS_OIDC_AUDIENCE": "https://worker.example"}), \
             patch("stayza.api.task_auth.verify_task_oidc", return_value=False):
            response = worker_client.post(path, json=body, headers={"Authorization": "Bearer bad"})
        assert response.status_code == 401


class TestTaskEndpointsWithAuth:
    def test_sweep_runs(self, worker_client, gateway):
        with patch("stayza.api.task_auth.verify_task_auth", return_value=True), \
             patch("stayza.domain.sweep.run_sweep", return_value={"auto_checkin": 1}) as run:
            response = worker_client.post("/tasks/settlement/sweep")
        assert response.status_code == 200
        assert run.call_args.kwargs["gateway"] is gateway

    def test_dispatch_transfer(self, worker_client, gateway):
        with patch("stayza.api.task_auth.verify_task_auth", return_value=True), \
             patch(
                 "stayza.domain.settlement.dispatch_transfer",
                 return_value={"status": "dispatched", "transfer_id": "t-1"},
             ) as dispatch:
            response = worker_client.post(
                "/tasks/settlement/dispatch-transfer", json={"transfer_id": "t-1"}
            )
        assert response.status_code == 200
        assert response.json()["status"] == "dispatched"
        assert dispatch.call_args[0][:2] == ("t-1", gateway)

    def test_dispatch_missing_fields_is_422(self, worker_client):
        with patch("stayza.api.task_auth.verify_task_auth", return_value=True):
            response = worker_client.post("/tasks/settlement/dispatch-transfer", json={})
        assert response.status_code == 422

    def test_reconcile_timeout_returns_503(self, worker_client):
        from stayza.domain.errors import GatewayTimeoutError

        with patch("stayza.api.task_auth.verify_task_auth", return_value=True), \
             patch(
                 "stayza.domain.settlement.reconcile_transfer",
                 side_effect=GatewayTimeoutError("slow"),
             ):
            response = worker_client.post(
                "/tasks/settlement/reconcile-transfer",
                json={"transfer_id": "t-1", "reference": "room_fee_b-1_e5"},
            )
        assert response.status_code == 503

    def test_reconcile_unknown_transfer_acked(self, worker_client):
        from stayza.domain.errors import NotFoundError

        with patch("stayza.api.task_auth.verify_task_auth", return_value=True), \
             patch(
                 "stayza.domain.settlement.reconcile_transfer",
                 side_effect=NotFoundError("gone", code="transfer_not_found"),
             ):
            response = worker_client.post(
                "/tasks/settlement/reconcile-transfer",
                json={"transfer_id": "t-9", "reference": "x"},
            )
        assert response.status_code == 200
        assert response.json()["status"] == "not_found"


class TestLocalDevSecret:
    """X-Internal-Task-Secret is only honoured with the local-dev audience."""

    def test_local_secret_accepted(self, worker_client):
        env = {"TASKS_OIDC_AUDIENCE": "stayza-tasks-local", "INTERNAL_TASK_SECRET": "s3cret"}
        with patch.dict(os.environ, env), \
             patch("stayza.domain.sweep.run_sweep", return_value={}):
            response = worker_client.post(
                "/tasks/settlement/sweep", headers={INTERNAL_SECRET_HEADER: "s3cret"}
            )
        assert response.status_code == 200

    def test_local_secret_wrong_value(self, worker_client):
        env = {"TASKS_OIDC_AUDIENCE": "stayza-tasks-local", "INTERNAL_TASK_SECRET": "s3cret"}
        with patch.dict(os.environ, env):
            response = worker_client.post(
                "/tasks/settlement/sweep", headers={INTERNAL_SECRET_HEADER: "guess"}
            )
        assert response.status_code == 401

    def test_local_secret_ignored_in_production(self, worker_client):
        env = {"TASKS_OIDC_AUDIENCE": "https://worker.example", "INTERNAL_TASK_SECRET": "s3cret"}
        with patch.dict(os.environ, env):
            response = worker_client.post(
                "/tasks/settlement/sweep", headers={INTERNAL_SECRET_HEADER: "s3cret"}
            )
        assert response.status_code == 401


class TestVerifyTaskOidc:
    def test_fails_closed_without_audience(self):
        with patch.dict(os.environ, {}, clear=True):
            assert verify_task_oidc("token") is False

    def test_service_account_must_match(self):
        env = {
            "TASKS_OIDC_AUDIENCE": "https://worker.example",
            "TASKS_OIDC_SERVICE_ACCOUNT": "tasks@project.iam.gserviceaccount.com",
        }
        with patch.dict(os.environ, env), patch(
            "stayza.api.task_auth.id_token.verify_oauth2_token",
            return_value={"email": "other@project.iam.gserviceaccount.com"},
        ):
            assert verify_task_oidc("token") is False

    def test_valid_token(self):
        env = {"TASKS_OIDC_AUDIENCE": "https://worker.example"}
        with patch.dict(os.environ, env), patch(
            "stayza.api.task_auth.id_token.verify_oauth2_token",
            return_value={"email": "tasks@project.iam.gserviceaccount.com"},
        ) as verify:
            assert verify_task_oidc("token") is True
        assert verify.call_args.kwargs["audience"] == "https://worker.example"

    def test_bad_signature(self):
        env = {"TASKS_OIDC_AUDIENCE": "https://worker.example"}
        with patch.dict(os.environ, env), patch(
            "stayza.api.task_auth.id_token.verify_oauth2_token",
            side_effect=ValueError("bad"),
        ):
            assert verify_task_oidc("token") is False

    def test_extract_bearer_token(self):
        request = MagicMock()
        request.headers = {"Authorization": "Bearer abc"}
        assert extract_bearer_token(request) == "abc"
        request.headers = {"Authorization": "Basic abc"}
        assert extract_bearer_token(request) is None
