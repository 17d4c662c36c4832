"""Shared fixtures for integration tests.

These tests drive the real app through its lifespan:
    message → wallet signature → create → ledger webhook → list

Only external boundaries are replaced: the wallet is a local Ethereum key
signing with EIP-191 (the default scheme), and no Postgres, Redis or ledger gateway is configured.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from cacm.api.app import create_app

INTEGRATION_WEBHOOK_SECRET = "integration-webhook-secret-do-not-use"


@pytest.fixture()
def webhook_secret() -> str:
    return INTEGRATION_WEBHOOK_SECRET


@pytest.fixture()
async def client(monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[AsyncClient]:
    """Full ASGI client against the real FastAPI app with in-memory stores."""
    monkeypatch.setenv("CACM_PG_DSN", "")
    monkeypatch.setenv("CACM_REDIS_URL", "")
    monkeypatch.setenv("CACM_LEDGER_URL", "")
    monkeypatch.setenv("CACM_LEDGER_WEBHOOK_SECRET", INTEGRATION_WEBHOOK_SECRET)
    monkeypatch.setenv("CACM_LOG_JSON", "false")
    monkeypatch.delenv("CACM_SIGNATURE_SCHEME", raising=False)

    app = create_app()
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
