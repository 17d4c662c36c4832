"""Shared fixtures for the test suite."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import pytest

from cacm.consent import Consent, ConsentStatus
from cacm.lifecycle import ConsentLifecycleManager
from cacm.settings import Settings
from cacm.signing.ed25519 import Ed25519Signer, generate_private_key_hex
from cacm.signing.eip191 import Eip191Signer
from cacm.signing.signer import SignatureResult, SignerError
from cacm.storage.audit_log import InMemoryAuditLog
from cacm.storage.consent_store import InMemoryConsentStore


class ScriptedSigner:
    """Signer double that returns a fixed result or raises a fixed error."""

    def __init__(
        self,
        identity: str | None = "0xAA11",
        signature: str = "sig1",
        error: SignerError | None = None,
        result_identity: str | None = None,
    ) -> None:
        self._identity = identity
        self._signature = signature
        self._error = error
        self._result_identity = result_identity
        self.messages: list[str] = []

    @property
    def identity(self) -> str | None:
        return self._identity

    async def sign(self, message: str) -> SignatureResult:
        self.messages.append(message)
        if self._error is not None:
            raise self._error
        return SignatureResult(
            signature=self._signature,
            identity=self._result_identity or self._identity or "",
        )


class CountingStore(InMemoryConsentStore):
    """In-memory store that records every write."""

    def __init__(self, *, conditional: bool = True) -> None:
        super().__init__()
        self.supports_conditional_update = conditional  # type: ignore[misc]
        self.create_calls = 0
        self.update_calls = 0

    def create(self, consent: Consent) -> Consent:
        self.create_calls += 1
        return super().create(consent)

    def update(
        self,
        consent_id: str,
        fields: dict[str, Any],
        expected_status: ConsentStatus | None = None,
    ) -> Consent:
        self.update_calls += 1
        return super().update(consent_id, fields, expected_status)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture()
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture()
def signer() -> ScriptedSigner:
    return ScriptedSigner()


@pytest.fixture()
def manager(store: CountingStore, audit_log: InMemoryAuditLog) -> ConsentLifecycleManager:
    """Manager without verification, so scripted signatures are accepted."""
    return ConsentLifecycleManager(store=store, audit_log=audit_log)


@pytest.fixture()
def private_key_hex() -> str:
    return generate_private_key_hex()


@pytest.fixture()
def ed25519_signer(private_key_hex: str) -> Ed25519Signer:
    return Ed25519Signer(private_key_hex)


@pytest.fixture()
def eip191_signer() -> Eip191Signer:
    return Eip191Signer()


@pytest.fixture()
def webhook_secret() -> str:
    return "test-ledger-webhook-secret"


@pytest.fixture()
def test_settings(webhook_secret: str) -> Settings:
    return Settings(
        pg_dsn="",
        redis_url="",
        ledger_url="",
        ledger_webhook_secret=webhook_secret,
        environment="dev",
        signature_scheme="ed25519",
    )


@pytest.fixture()
def make_signer() -> type[ScriptedSigner]:
    return ScriptedSigner


@pytest.fixture()
def make_store() -> type[CountingStore]:
    return CountingStore


class _RecordingCursor:
    def __init__(self, handler: Any) -> None:
        self._handler = handler
        self._rows: list[tuple[Any, ...]] = []
        self.description: list[tuple[str]] | None = None
        self.statements: list[str] = []

    def __enter__(self) -> _RecordingCursor:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def execute(self, sql: str, params: Any = None) -> None:
        self.statements.append(sql)
        rows = self._handler(sql)
        self._rows = rows or []
        self.description = [("id",)] if rows is not None else None

    def fetchall(self) -> list[tuple[Any, ...]]:
        return self._rows


class RecordingConnection:
    def __init__(self, handler: Any) -> None:
        self.cur = _RecordingCursor(handler)
        self.committed = False
        self.rolled_back = False

    def cursor(self) -> _RecordingCursor:
        return self.cur


class RecordingPool:
    """Hands out a fresh connection per checkout and settles it on exit.

    Mirrors ``psycopg_pool.ConnectionPool.connection()``: commit when the
    block exits cleanly, rollback when an exception escapes. *handler* maps
    each SQL statement to its result rows, or None for statements that
    return nothing; it may raise to simulate a driver error.
    """

    def __init__(self, handler: Any = None) -> None:
        self._handler = handler or (lambda sql: None)
        self._lock = threading.Lock()
        self.checkouts: list[RecordingConnection] = []

    @contextmanager
    def connection(self) -> Iterator[RecordingConnection]:
        conn = RecordingConnection(self._handler)
        with self._lock:
            self.checkouts.append(conn)
        try:
            yield conn
        except BaseException:
            conn.rolled_back = True
            raise
        conn.committed = True


@pytest.fixture()
def make_pool() -> type[RecordingPool]:
    return RecordingPool
