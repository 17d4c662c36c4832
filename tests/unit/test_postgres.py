"""Tests for Postgres backend wiring."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from cacm.storage.audit_log import PostgresAuditLog
from cacm.storage.consent_store import PostgresConsentStore
from cacm.storage.postgres import APPLICATION_NAME, open_postgres_backends


def test_open_backends_shares_one_pool_and_creates_both_schemas() -> None:
    pool = MagicMock()
    conn = pool.connection.return_value.__enter__.return_value
    cursor = conn.cursor.return_value.__enter__.return_value
    with patch("cacm.storage.postgres.ConnectionPool", return_value=pool) as pool_cls:
        store, audit_log, returned = open_postgres_backends("postgresql://test", max_size=4)

    pool_cls.assert_called_once_with(
        "postgresql://test",
        min_size=1,
        max_size=4,
        kwargs={"application_name": APPLICATION_NAME},
        open=True,
    )
    assert returned is pool
    assert isinstance(store, PostgresConsentStore)
    assert isinstance(audit_log, PostgresAuditLog)
    executed = " ".join(call.args[0] for call in cursor.execute.call_args_list)
    assert "CREATE TABLE IF NOT EXISTS consents" in executed
    assert "CREATE TABLE IF NOT EXISTS consent_events" in executed
    assert pool.connection.call_count == 2
