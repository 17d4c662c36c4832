"""Tests for consent stores (in-memory + Postgres against a mocked pool)."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import psycopg
import pytest

from cacm.consent import Consent, ConsentPurpose, ConsentStatus
from cacm.errors import InvalidInput, NotFound, PersistenceFailed, StatusConflict
from cacm.storage.consent_store import InMemoryConsentStore, PostgresConsentStore


def _consent(subject_id: str = "patient-001", purpose: ConsentPurpose = ConsentPurpose.RESEARCH_STUDY) -> Consent:
    return Consent(
        subject_id=subject_id,
        purpose=purpose,
        authorizer_address="0xAA11",
        signature="sig1",
    )


_ACTIVATE = {"status": ConsentStatus.ACTIVE, "ledger_reference": "0xABC"}


class TestInMemoryConsentStore:
    def setup_method(self) -> None:
        self.store = InMemoryConsentStore()

    def test_create_assigns_unique_ids(self) -> None:
        a = self.store.create(_consent())
        b = self.store.create(_consent())
        assert a.id and b.id
        assert a.id != b.id

    def test_get_missing_returns_none(self) -> None:
        assert self.store.get("nope") is None

    def test_update_applies_fields(self) -> None:
        created = self.store.create(_consent())
        updated = self.store.update(created.id, _ACTIVATE)  # type: ignore[arg-type]
        assert updated.status is ConsentStatus.ACTIVE
        assert updated.ledger_reference == "0xABC"
        assert updated.created_at == created.created_at
        assert self.store.get(created.id) == updated  # type: ignore[arg-type]

    def test_update_missing_raises_not_found(self) -> None:
        with pytest.raises(NotFound):
            self.store.update("nope", _ACTIVATE)

    def test_update_rejects_immutable_fields(self) -> None:
        created = self.store.create(_consent())
        with pytest.raises(InvalidInput):
            self.store.update(created.id, {"signature": "forged"})  # type: ignore[arg-type]

    def test_conditional_update_conflict(self) -> None:
        created = self.store.create(_consent())
        self.store.update(created.id, _ACTIVATE, expected_status=ConsentStatus.PENDING)  # type: ignore[arg-type]
        with pytest.raises(StatusConflict):
            self.store.update(
                created.id,  # type: ignore[arg-type]
                {"status": ConsentStatus.ACTIVE, "ledger_reference": "0xOTHER"},
                expected_status=ConsentStatus.PENDING,
            )
        assert self.store.get(created.id).ledger_reference == "0xABC"  # type: ignore[arg-type,union-attr]

    def test_query_filters_and_keeps_insertion_order(self) -> None:
        first = self.store.create(_consent("patient-001"))
        second = self.store.create(_consent("patient-002"))
        third = self.store.create(_consent("patient-001", ConsentPurpose.INSURANCE_PROVIDER))
        self.store.update(third.id, _ACTIVATE)  # type: ignore[arg-type]

        assert [c.id for c in self.store.query()] == [first.id, second.id, third.id]
        assert [c.id for c in self.store.query(subject_id="patient-001")] == [first.id, third.id]
        assert [c.id for c in self.store.query(status=ConsentStatus.PENDING)] == [first.id, second.id]
        assert [
            c.id for c in self.store.query(subject_id="patient-001", status=ConsentStatus.ACTIVE)
        ] == [third.id]

    def test_empty_store_returns_empty(self) -> None:
        assert self.store.query() == []


def _row(status: str = "pending", ledger_reference: str | None = None) -> tuple[Any, ...]:
    return (
        "c-1",
        "patient-001",
        "Research Study Participation",
        "0xAA11",
        "sig1",
        status,
        ledger_reference,
        datetime(2026, 1, 1, tzinfo=UTC),
    )


def _mock_pool(*fetch_results: list[tuple[Any, ...]]) -> tuple[MagicMock, MagicMock]:
    pool = MagicMock()
    cursor = MagicMock()
    cursor.description = [("id",)]
    cursor.fetchall.side_effect = list(fetch_results)
    conn = pool.connection.return_value.__enter__.return_value
    conn.cursor.return_value.__enter__.return_value = cursor
    return pool, cursor


class TestPostgresConsentStore:
    def test_create_inserts_and_assigns_id(self) -> None:
        pool, cursor = _mock_pool([])
        stored = PostgresConsentStore(pool).create(_consent())
        assert stored.id
        sql, params = cursor.execute.call_args.args
        assert sql.startswith("INSERT INTO consents")
        assert params[0] == stored.id
        assert params[2] == "Research Study Participation"
        assert params[5] == "pending"
        pool.connection.assert_called_once()

    def test_get_hydrates_row(self) -> None:
        pool, _ = _mock_pool([_row()])
        consent = PostgresConsentStore(pool).get("c-1")
        assert consent is not None
        assert consent.purpose is ConsentPurpose.RESEARCH_STUDY
        assert consent.status is ConsentStatus.PENDING

    def test_conditional_update_uses_status_guard(self) -> None:
        pool, cursor = _mock_pool([_row("active", "0xABC")])
        updated = PostgresConsentStore(pool).update("c-1", _ACTIVATE, expected_status=ConsentStatus.PENDING)
        sql, params = cursor.execute.call_args.args
        assert "WHERE id = %s AND status = %s" in sql
        assert params == ["0xABC", "active", "c-1", "pending"]
        assert updated.ledger_reference == "0xABC"

    def test_conditional_update_conflict(self) -> None:
        pool, _ = _mock_pool([], [_row("active", "0xOTHER")])
        with pytest.raises(StatusConflict):
            PostgresConsentStore(pool).update("c-1", _ACTIVATE, expected_status=ConsentStatus.PENDING)

    def test_update_missing_raises_not_found(self) -> None:
        pool, _ = _mock_pool([], [])
        with pytest.raises(NotFound):
            PostgresConsentStore(pool).update("c-1", _ACTIVATE, expected_status=ConsentStatus.PENDING)

    def test_query_orders_by_insertion(self) -> None:
        pool, cursor = _mock_pool([_row()])
        result = PostgresConsentStore(pool).query(subject_id="patient-001", status=ConsentStatus.PENDING)
        sql, params = cursor.execute.call_args.args
        assert "WHERE subject_id = %s AND status = %s" in sql
        assert sql.endswith("ORDER BY seq ASC")
        assert params == ["patient-001", "pending"]
        assert len(result) == 1

    def test_driver_error_becomes_persistence_failed(self, make_pool: Any) -> None:
        def handler(sql: str) -> None:
            raise psycopg.OperationalError("connection lost")

        pool = make_pool(handler)
        with pytest.raises(PersistenceFailed):
            PostgresConsentStore(pool).create(_consent())
        (conn,) = pool.checkouts
        assert conn.rolled_back
        assert not conn.committed

    def test_each_operation_gets_its_own_transaction(self, make_pool: Any) -> None:
        pool = make_pool(lambda sql: [_row()] if sql.startswith("SELECT") else None)
        store = PostgresConsentStore(pool)
        store.create(_consent())
        store.get("c-1")
        assert len(pool.checkouts) == 2
        assert all(c.committed for c in pool.checkouts)

    def test_failing_read_does_not_roll_back_concurrent_activation(self, make_pool: Any) -> None:
        update_ran = threading.Event()
        read_failed = threading.Event()

        def handler(sql: str) -> list[tuple[Any, ...]]:
            if sql.startswith("UPDATE"):
                update_ran.set()
                assert read_failed.wait(5)
                return [_row("active", "0xABC")]
            assert update_ran.wait(5)
            raise psycopg.OperationalError("statement timeout")

        pool = make_pool(handler)
        store = PostgresConsentStore(pool)

        def failing_read() -> None:
            try:
                store.get("c-2")
            except PersistenceFailed:
                read_failed.set()

        with ThreadPoolExecutor(max_workers=2) as executor:
            activation = executor.submit(
                store.update, "c-1", _ACTIVATE, expected_status=ConsentStatus.PENDING
            )
            executor.submit(failing_read).result(timeout=5)
            updated = activation.result(timeout=5)

        assert updated.status is ConsentStatus.ACTIVE
        writer = next(c for c in pool.checkouts if c.cur.statements[0].startswith("UPDATE"))
        reader = next(c for c in pool.checkouts if c.cur.statements[0].startswith("SELECT"))
        assert writer is not reader
        assert writer.committed and not writer.rolled_back
        assert reader.rolled_back and not reader.committed
