"""Database URL resolution for Alembic.

Kept apart from env.py so it can be imported without an Alembic context.
DATABASE_URL may be a URL or a libpq key=value DSN (Cloud SQL sockets use
the latter); DB_PASSWORD fills in a missing password either way.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

DRIVER = "postgresql+psycopg2"


def _env_password() -> str | None:
    return os.environ.get("DB_PASSWORD") or None


def libpq_dsn_to_url(dsn: str) -> URL:
    """Convert ``dbname=... user=... host=...`` into a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and is passed as
    the ``host`` query parameter.
    """
    params = parse_dsn(dsn)
    host = params.get("host", "localhost")
    query: dict[str, str] = {}
    port: int | None = int(params.get("port", "5432"))
    if host.startswith("/"):
        query["host"] = host
        host, port = None, None

    return URL.create(
        DRIVER,
        username=params.get("user"),
        password=params.get("password") or _env_password(),
        host=host,
        port=port,
        database=params.get("dbname"),
        query=query,
    )


def database_url() -> URL:
    raw = os.environ.get("DATABASE_URL")
    if not raw:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in raw:
        return libpq_dsn_to_url(raw)

    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://"):]
    url = make_url(raw).set(drivername=DRIVER)
    if not url.password and _env_password():
        url = url.set(password=_env_password())
    return url
