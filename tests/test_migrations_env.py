"""Tests for Alembic database URL resolution."""

from __future__ import annotations

import pytest

from migrations.env_helpers import DRIVER, database_url, libpq_dsn_to_url


class TestLibpqDsnToUrl:
    def test_cloudsql_socket(self):
        url = libpq_dsn_to_url(
            "dbname=stayza user=stayza-sa password=s3cret host=/cloudsql/proj:europe-west1:inst"
        )
        assert url.drivername == DRIVER
        assert url.host is None
        assert url.port is None
        assert url.query["host"] == "/cloudsql/proj:europe-west1:inst"
        assert url.database == "stayza"
        assert url.password == "s3cret"

    def test_tcp_host_default_port(self):
        url = libpq_dsn_to_url("dbname=db user=u password=p host=myhost")
        assert (url.host, url.port, url.database) == ("myhost", 5432, "db")

    def test_custom_port(self):
        assert libpq_dsn_to_url("dbname=db user=u host=10.0.0.1 port=5433").port == 5433

    def test_quoted_password_with_spaces(self):
        url = libpq_dsn_to_url("dbname=db user=u password='p@ss w0rd' host=h")
        assert url.password == "p@ss w0rd"

    def test_db_password_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert libpq_dsn_to_url("dbname=db user=u host=h").password == "from-env"

    def test_dsn_password_wins(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert libpq_dsn_to_url("dbname=db user=u password=dsn host=h").password == "dsn"


class TestDatabaseUrl:
    def test_missing_env(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            database_url()

    def test_postgres_scheme_normalized(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@h:5432/db")
        url = database_url()
        assert url.drivername == DRIVER
        assert url.username == "u"

    def test_url_password_filled_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u@h/db")
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert database_url().password == "from-env"

    def test_dsn_form(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "dbname=db user=u password=p host=h")
        monkeypatch.delenv("DB_PASSWORD", raising=False)
        assert database_url().host == "h"
