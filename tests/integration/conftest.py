"""Integration fixtures: an ephemeral PostgreSQL database from
pytest-postgresql, migrated with every file under migrations/.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from member_sync.tabular_store import PostgresSheetBackend

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _libpq_dsn(info) -> str:
    parts = {
        "host": info.host,
        "port": info.port,
        "dbname": info.dbname,
        "user": info.user,
        "password": info.password or "",
    }
    return " ".join(f"{key}={value}" for key, value in parts.items())


def apply_migrations(dsn: str) -> None:
    with psycopg.connect(dsn, autocommit=True) as conn:
        for migration in sorted(MIGRATIONS_DIR.glob("*.sql")):
            conn.execute(migration.read_text(encoding="utf-8"))


@pytest.fixture()
def dsn(postgresql):
    """libpq DSN of a freshly migrated database."""
    value = _libpq_dsn(postgresql.info)
    apply_migrations(value)
    return value


@pytest.fixture()
def conn(dsn):
    connection = psycopg.connect(dsn, autocommit=False)
    yield connection
    connection.close()


@pytest.fixture()
def backend(conn):
    return PostgresSheetBackend(conn)
