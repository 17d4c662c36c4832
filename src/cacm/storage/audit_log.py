"""Consent audit trail.

One row per lifecycle transition, never updated or deleted. Events for a
consent are returned in the order they happened.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from psycopg_pool import ConnectionPool

__all__ = [
    "CONSENT_ACTIVATED",
    "CONSENT_CREATED",
    "AuditLogProtocol",
    "ConsentEvent",
    "InMemoryAuditLog",
    "PostgresAuditLog",
]

CONSENT_CREATED = "consent_created"
CONSENT_ACTIVATED = "consent_activated"


@dataclass(frozen=True)
class ConsentEvent:
    consent_id: str
    event_type: str
    payload: dict[str, Any]
    actor: str = "system"
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditLogProtocol(Protocol):
    def append(
        self,
        consent_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
    ) -> str:
        """Record a lifecycle event and return its event_id."""
        ...

    def list_events(
        self,
        consent_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Events matching the filters, oldest first."""
        ...


class InMemoryAuditLog:
    """Process-local audit trail for dev and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[ConsentEvent] = []

    def append(
        self,
        consent_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
    ) -> str:
        event = ConsentEvent(consent_id, event_type, dict(payload), actor)
        with self._lock:
            self._events.append(event)
        return event.event_id

    def list_events(
        self,
        consent_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        with self._lock:
            snapshot = list(self._events)
        matched = (
            e
            for e in snapshot
            if (not consent_id or e.consent_id == consent_id)
            and (not event_type or e.event_type == event_type)
        )
        return [e.to_dict() for _, e in zip(range(limit), matched, strict=False)]


_AUDIT_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS consent_events (
    seq         BIGSERIAL,
    event_id    TEXT PRIMARY KEY,
    consent_id  TEXT NOT NULL,
    event_type  TEXT NOT NULL,
    payload     JSONB NOT NULL,
    actor       TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS consent_events_consent_idx ON consent_events (consent_id, seq);
"""

_EVENT_COLUMNS = "event_id, consent_id, event_type, payload, actor, created_at"


def _row_to_event(row: tuple[Any, ...]) -> ConsentEvent:
    event_id, consent_id, event_type, payload, actor, created_at = row
    return ConsentEvent(
        consent_id=consent_id,
        event_type=event_type,
        payload=json.loads(payload) if isinstance(payload, str) else payload,
        actor=actor,
        event_id=event_id,
        created_at=created_at.isoformat() if isinstance(created_at, datetime) else created_at,
    )


class PostgresAuditLog:
    """Audit trail in the ``consent_events`` table, ordered by ``seq``.

    Appends use their own pooled transaction; a failed append is rolled back
    by the pool and cannot poison later consent writes.
    """

    def __init__(self, pool: ConnectionPool[Any]) -> None:
        self._pool = pool

    def ensure_schema(self) -> None:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(_AUDIT_SCHEMA_SQL)

    def append(
        self,
        consent_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
    ) -> str:
        event = ConsentEvent(consent_id, event_type, payload, actor)
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO consent_events ({_EVENT_COLUMNS}) "  # noqa: S608
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    event.event_id,
                    event.consent_id,
                    event.event_type,
                    json.dumps(event.payload),
                    event.actor,
                    event.created_at,
                ),
            )
        return event.event_id

    def list_events(
        self,
        consent_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        filters = {"consent_id": consent_id, "event_type": event_type}
        active = {col: val for col, val in filters.items() if val}
        where = " AND ".join(f"{col} = %s" for col in active)
        sql = f"SELECT {_EVENT_COLUMNS} FROM consent_events"  # noqa: S608
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY seq ASC LIMIT %s"

        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(sql, [*active.values(), limit])
            rows = cur.fetchall()
        return [_row_to_event(r).to_dict() for r in rows]
