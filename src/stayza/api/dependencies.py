"""Request-scoped access to collaborators stored on app.state."""

from __future__ import annotations

from fastapi import HTTPException, Request

from stayza.paystack.client import PaystackClient
from stayza.tasks.client import TasksClient


def get_gateway(request: Request) -> PaystackClient | None:
    return getattr(request.app.state, "gateway", None)


def require_gateway(request: Request) -> PaystackClient:
    gateway = get_gateway(request)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Payment gateway not configured")
    return gateway


def get_tasks_client(request: Request) -> TasksClient:
    return request.app.state.tasks_client
