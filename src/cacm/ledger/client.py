"""Ledger confirmation gateway client with typed errors."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from cacm.errors import LedgerUnavailable
from cacm.signing.canonical import consent_digest

if TYPE_CHECKING:
    from cacm.consent import Consent

__all__ = ["HttpLedgerConfirmer", "LedgerConfirmer"]

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"


class LedgerConfirmer(Protocol):
    """Trusted collaborator that vouches for a ledger reference."""

    async def confirm(self, consent: Consent, ledger_reference: str) -> bool:
        """Return True if *ledger_reference* is a confirmed record of *consent*."""
        ...


class HttpLedgerConfirmer:
    """Looks up transactions on the ledger gateway's HTTP API.

    A reference confirms a consent when the gateway reports the transaction
    as confirmed and its memo equals the consent digest.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def fetch_transaction(self, ledger_reference: str) -> dict[str, Any] | None:
        """Return the gateway's transaction document, or None if unknown.

        Raises LedgerUnavailable if the gateway is unreachable.
        """
        try:
            resp = await self._client.get(f"/v1/transactions/{ledger_reference}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"Ledger gateway unreachable: {e}") from e
        return resp.json()  # type: ignore[no-any-return]

    async def confirm(self, consent: Consent, ledger_reference: str) -> bool:
        tx = await self.fetch_transaction(ledger_reference)
        if tx is None:
            logger.info("Ledger reference %s unknown to gateway", ledger_reference)
            return False
        if tx.get("status") != CONFIRMED:
            logger.info("Ledger reference %s not confirmed (%s)", ledger_reference, tx.get("status"))
            return False
        return tx.get("memo") == consent_digest(consent)

    async def close(self) -> None:
        await self._client.aclose()
