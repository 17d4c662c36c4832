"""PostgreSQL connection pool and backend wiring."""

from __future__ import annotations

from typing import Any

from psycopg_pool import ConnectionPool

from cacm.storage.audit_log import PostgresAuditLog
from cacm.storage.consent_store import PostgresConsentStore

__all__ = ["open_pool", "open_postgres_backends"]

APPLICATION_NAME = "cacm"


def open_pool(dsn: str, max_size: int = 10) -> ConnectionPool[Any]:
    """Open a pool; each checkout is one transaction committed on clean exit."""
    return ConnectionPool(
        dsn,
        min_size=1,
        max_size=max_size,
        kwargs={"application_name": APPLICATION_NAME},
        open=True,
    )


def open_postgres_backends(
    dsn: str,
    max_size: int = 10,
) -> tuple[PostgresConsentStore, PostgresAuditLog, ConnectionPool[Any]]:
    """Open a pool, create the consent tables if missing, and return both stores.

    The caller owns the returned pool and must close it.
    """
    pool = open_pool(dsn, max_size)
    store = PostgresConsentStore(pool)
    audit_log = PostgresAuditLog(pool)
    store.ensure_schema()
    audit_log.ensure_schema()
    return store, audit_log, pool
