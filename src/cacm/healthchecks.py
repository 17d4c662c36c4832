"""Readiness probes for the consent service's backing dependencies.

Each probe returns a plain bool and never raises; ``/ready`` aggregates them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

__all__ = ["check_postgres", "check_redis", "check_ledger"]

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 2  # seconds


async def _probe(name: str, target: str, check: Callable[[], Awaitable[bool]]) -> bool:
    if not target:
        return False
    try:
        return await check()
    except Exception:
        logger.warning("%s readiness probe failed", name, exc_info=True)
        return False


def _consents_table_present(dsn: str) -> bool:
    import psycopg

    with psycopg.connect(dsn, connect_timeout=PROBE_TIMEOUT) as conn, conn.cursor() as cur:
        cur.execute("SELECT to_regclass('consents')")
        row: Any = cur.fetchone()
    # The server is reachable but the schema has not been created yet.
    return row is not None and row[0] is not None


def _redis_ping(url: str) -> bool:
    import redis

    client = redis.Redis.from_url(url, socket_timeout=PROBE_TIMEOUT, socket_connect_timeout=PROBE_TIMEOUT)
    try:
        return bool(client.ping())
    finally:
        client.close()


async def check_postgres(dsn: str) -> bool:
    """True when Postgres answers and the ``consents`` table exists."""
    return await _probe("Postgres", dsn, lambda: asyncio.to_thread(_consents_table_present, dsn))


async def check_redis(url: str) -> bool:
    """True when the webhook dedup Redis answers PING."""
    return await _probe("Redis", url, lambda: asyncio.to_thread(_redis_ping, url))


async def check_ledger(url: str) -> bool:
    """True when the ledger gateway's ``/v1/health`` returns 200."""

    async def _get() -> bool:
        async with httpx.AsyncClient(base_url=url, timeout=PROBE_TIMEOUT) as client:
            resp = await client.get("/v1/health")
        return resp.status_code == 200

    return await _probe("Ledger gateway", url, _get)
