"""Read-side facade over the consent store."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from cacm.consent import ConsentStatus, parse_status

if TYPE_CHECKING:
    from cacm.consent import Consent
    from cacm.storage.consent_store import ConsentStoreProtocol

__all__ = ["ConsentQuery"]


class ConsentQuery:
    """Translates filter requests into store queries.

    Results come back in store order (insertion order, oldest first) and are
    fully materialised.
    """

    def __init__(self, store: ConsentStoreProtocol) -> None:
        self._store = store

    async def list(
        self,
        subject_id: str | None = None,
        status: ConsentStatus | str | None = None,
    ) -> list[Consent]:
        parsed = parse_status(status) if status else None
        return list(await asyncio.to_thread(self._store.query, subject_id or None, parsed))
