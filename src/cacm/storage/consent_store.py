"""Consent store — protocol + implementations."""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from cacm.consent import Consent, ConsentPurpose, ConsentStatus
from cacm.errors import InvalidInput, NotFound, PersistenceFailed, StatusConflict

if TYPE_CHECKING:
    from psycopg_pool import ConnectionPool

__all__ = [
    "MUTABLE_FIELDS",
    "ConsentStoreProtocol",
    "InMemoryConsentStore",
    "PostgresConsentStore",
]

MUTABLE_FIELDS = frozenset({"status", "ledger_reference"})


class ConsentStoreProtocol(Protocol):
    """Durable keyed storage of consent records."""

    # False means the manager must serialize transitions per consent id.
    supports_conditional_update: bool

    def create(self, consent: Consent) -> Consent:
        """Persist a new consent. Returns it with its assigned id."""
        ...

    def get(self, consent_id: str) -> Consent | None:
        ...

    def update(
        self,
        consent_id: str,
        fields: dict[str, Any],
        expected_status: ConsentStatus | None = None,
    ) -> Consent:
        """Apply a partial update of mutable fields.

        When *expected_status* is given the write only happens if the stored
        status still matches; otherwise StatusConflict is raised.
        """
        ...

    def query(
        self,
        subject_id: str | None = None,
        status: ConsentStatus | None = None,
    ) -> list[Consent]:
        """Consents matching the filters, oldest first."""
        ...


def _check_fields(fields: dict[str, Any]) -> None:
    illegal = set(fields) - MUTABLE_FIELDS
    if illegal:
        msg = f"Immutable consent fields cannot be updated: {sorted(illegal)}"
        raise InvalidInput(msg)


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryConsentStore:
    """Consent store backed by an insertion-ordered dict — no external deps."""

    supports_conditional_update = True

    def __init__(self) -> None:
        self._records: dict[str, Consent] = {}
        self._lock = threading.Lock()

    def create(self, consent: Consent) -> Consent:
        stored = replace(consent, id=str(uuid.uuid4()))
        with self._lock:
            self._records[stored.id] = stored  # type: ignore[index]
        return stored

    def get(self, consent_id: str) -> Consent | None:
        return self._records.get(consent_id)

    def update(
        self,
        consent_id: str,
        fields: dict[str, Any],
        expected_status: ConsentStatus | None = None,
    ) -> Consent:
        _check_fields(fields)
        with self._lock:
            existing = self._records.get(consent_id)
            if existing is None:
                msg = f"Consent {consent_id} not found"
                raise NotFound(msg)
            if expected_status is not None and existing.status is not expected_status:
                msg = f"Consent {consent_id} is {existing.status}, expected {expected_status}"
                raise StatusConflict(msg)
            updated = replace(existing, **fields)
            self._records[consent_id] = updated
        return updated

    def query(
        self,
        subject_id: str | None = None,
        status: ConsentStatus | None = None,
    ) -> list[Consent]:
        with self._lock:
            out = list(self._records.values())
        if subject_id:
            out = [c for c in out if c.subject_id == subject_id]
        if status:
            out = [c for c in out if c.status is status]
        return out


# ── PostgreSQL implementation ────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS consents (
    seq                BIGSERIAL,
    id                 TEXT PRIMARY KEY,
    subject_id         TEXT NOT NULL,
    purpose            TEXT NOT NULL,
    authorizer_address TEXT NOT NULL CHECK (authorizer_address <> ''),
    signature          TEXT NOT NULL CHECK (signature <> ''),
    status             TEXT NOT NULL,
    ledger_reference   TEXT,
    created_at         TIMESTAMPTZ NOT NULL,
    CHECK ((status = 'active') = (ledger_reference IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS consents_subject_idx ON consents (subject_id);
CREATE INDEX IF NOT EXISTS consents_status_idx ON consents (status);
"""

_COLUMNS = (
    "id, subject_id, purpose, authorizer_address, signature, "
    "status, ledger_reference, created_at"
)


def _row_to_consent(row: tuple[Any, ...]) -> Consent:
    created_at = row[7]
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return Consent(
        id=row[0],
        subject_id=row[1],
        purpose=ConsentPurpose(row[2]),
        authorizer_address=row[3],
        signature=row[4],
        status=ConsentStatus(row[5]),
        ledger_reference=row[6],
        created_at=created_at,
    )


class PostgresConsentStore:
    """Consent records in PostgreSQL with compare-and-set transitions.

    Every statement runs in its own pooled connection and transaction, so a
    failure in one request never rolls back another request's write.
    """

    supports_conditional_update = True

    def __init__(self, pool: ConnectionPool[Any]) -> None:
        self._pool = pool

    def ensure_schema(self) -> None:
        self._execute(SCHEMA)

    def _execute(self, sql: str, params: Any = None) -> list[tuple[Any, ...]]:
        import psycopg as _pg

        # The pool commits on a clean exit and rolls back when an error escapes.
        try:
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.execute(sql, params)  # type: ignore[arg-type]
                rows = cur.fetchall() if cur.description else []
        except _pg.Error as exc:
            msg = f"Consent store unavailable: {exc}"
            raise PersistenceFailed(msg) from exc
        return rows

    def create(self, consent: Consent) -> Consent:
        stored = replace(consent, id=str(uuid.uuid4()))
        self._execute(
            f"INSERT INTO consents ({_COLUMNS}) "  # noqa: S608
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
            (
                stored.id,
                stored.subject_id,
                stored.purpose.value,
                stored.authorizer_address,
                stored.signature,
                stored.status.value,
                stored.ledger_reference,
                stored.created_at,
            ),
        )
        return stored

    def get(self, consent_id: str) -> Consent | None:
        rows = self._execute(
            f"SELECT {_COLUMNS} FROM consents WHERE id = %s",  # noqa: S608
            (consent_id,),
        )
        return _row_to_consent(rows[0]) if rows else None

    def update(
        self,
        consent_id: str,
        fields: dict[str, Any],
        expected_status: ConsentStatus | None = None,
    ) -> Consent:
        _check_fields(fields)
        if not fields:
            existing = self.get(consent_id)
            if existing is None:
                msg = f"Consent {consent_id} not found"
                raise NotFound(msg)
            return existing

        names = sorted(fields)
        assignments = ", ".join(f"{name} = %s" for name in names)
        params: list[Any] = [getattr(fields[name], "value", fields[name]) for name in names]
        where = "id = %s"
        params.append(consent_id)
        if expected_status is not None:
            where += " AND status = %s"
            params.append(expected_status.value)

        rows = self._execute(
            f"UPDATE consents SET {assignments} WHERE {where} RETURNING {_COLUMNS}",  # noqa: S608
            params,
        )
        if rows:
            return _row_to_consent(rows[0])

        current = self.get(consent_id)
        if current is None:
            msg = f"Consent {consent_id} not found"
            raise NotFound(msg)
        msg = f"Consent {consent_id} is {current.status}, expected {expected_status}"
        raise StatusConflict(msg)

    def query(
        self,
        subject_id: str | None = None,
        status: ConsentStatus | None = None,
    ) -> list[Consent]:
        clauses: list[str] = []
        params: list[Any] = []

        if subject_id:
            clauses.append("subject_id = %s")
            params.append(subject_id)
        if status:
            clauses.append("status = %s")
            params.append(status.value)

        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self._execute(
            f"SELECT {_COLUMNS} FROM consents {where} ORDER BY seq ASC",  # noqa: S608
            params,
        )
        return [_row_to_consent(r) for r in rows]
