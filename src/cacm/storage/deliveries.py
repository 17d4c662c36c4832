"""At-most-once bookkeeping for ledger webhook deliveries (Redis SET NX EX)."""

from __future__ import annotations

import logging
from typing import Any

import redis

__all__ = ["DeliveryGate"]

logger = logging.getLogger(__name__)

DELIVERY_TTL_SECONDS = 86400  # 24 h; the gateway stops redelivering well before


class DeliveryGate:
    """Claims delivery ids so each confirmation is processed once.

    A claim that is not followed by a successful activation must be released,
    otherwise the gateway's redelivery would be dropped as a duplicate.
    """

    key_prefix = "cacm:webhook:delivery:"

    def __init__(self, client: Any, ttl_seconds: int = DELIVERY_TTL_SECONDS) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = DELIVERY_TTL_SECONDS) -> DeliveryGate:
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl_seconds)

    def _key(self, delivery_id: str) -> str:
        return f"{self.key_prefix}{delivery_id}"

    def claim(self, delivery_id: str) -> bool:
        """True if this is the first time *delivery_id* is seen within the TTL."""
        return bool(self._client.set(self._key(delivery_id), "1", nx=True, ex=self._ttl))

    def release(self, delivery_id: str) -> None:
        self._client.delete(self._key(delivery_id))
        logger.info("Released delivery %s for redelivery", delivery_id)

    def close(self) -> None:
        self._client.close()
