"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response

from stayza.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from stayza.paystack.client import PaystackClient
from stayza.tasks.client import TasksClient

from .routers import public, worker

AppRole = Literal["public", "worker"]


def _default_gateway() -> PaystackClient | None:
    if not os.environ.get("PAYSTACK_SECRET_KEY"):
        return None
    return PaystackClient()


def create_app(
    role: AppRole | None = None,
    *,
    gateway: PaystackClient | None = None,
    tasks_client: TasksClient | None = None,
) -> FastAPI:
    """Create the app for APP_ROLE.

    Args:
        role: Explicit role override. Defaults to APP_ROLE, then "public".
        gateway: Paystack client; built from PAYSTACK_SECRET_KEY when omitted.
        tasks_client: Tasks client; a fresh one per app when omitted.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]

    app = FastAPI(title="Stayza Escrow", docs_url=None, redoc_url=None)
    app.state.gateway = gateway if gateway is not None else _default_gateway()
    app.state.tasks_client = tasks_client if tasks_client is not None else TasksClient()

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)

    if role == "worker":
        app.include_router(worker.router)

    return app
