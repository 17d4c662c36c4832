"""Consent lifecycle manager — creation, activation and queries.

Creation is all-or-nothing: the canonical message is signed first and the
consent is only written once a usable signature is in hand, so a declined,
failed or abandoned signing leaves no record behind.

Activation is the only transition. It is idempotent for the same ledger
reference and relies on the store's conditional update to stay correct under
concurrent callers; stores without one are serialized per consent id.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from cacm.consent import Consent, ConsentStatus, can_transition, parse_purpose, validate_subject_id
from cacm.errors import (
    ConsentError,
    InvalidInput,
    InvalidTransition,
    LedgerUnconfirmed,
    NotFound,
    PersistenceFailed,
    SigningFailed,
    StatusConflict,
    Unauthorized,
)
from cacm.logging import get_logger
from cacm.query import ConsentQuery
from cacm.signing.canonical import build_consent_message
from cacm.signing.signer import SignerError
from cacm.storage.audit_log import CONSENT_ACTIVATED, CONSENT_CREATED

if TYPE_CHECKING:
    from collections.abc import Callable

    from cacm.consent import ConsentPurpose
    from cacm.ledger.client import LedgerConfirmer
    from cacm.signing.signer import SignatureVerifier, Signer
    from cacm.storage.audit_log import AuditLogProtocol
    from cacm.storage.consent_store import ConsentStoreProtocol

__all__ = ["ConsentLifecycleManager"]

logger = get_logger(component="consent_lifecycle")


class ConsentLifecycleManager:
    """Owns the consent state machine.

    Holds no consent state of its own; everything lives in the store.
    """

    def __init__(
        self,
        store: ConsentStoreProtocol,
        audit_log: AuditLogProtocol | None = None,
        verifier: SignatureVerifier | None = None,
        ledger_confirmer: LedgerConfirmer | None = None,
        signing_timeout: float | None = 120.0,
        on_activated: Callable[[Consent], None] | None = None,
    ) -> None:
        """Wire the manager to its backends.

        Args:
            on_activated: Called once per consent, only by the call that wrote
                the activation (never for idempotent repeats or lost races).
        """
        self._store = store
        self._audit = audit_log
        self._verifier = verifier
        self._ledger = ledger_confirmer
        self._signing_timeout = signing_timeout
        self._on_activated = on_activated
        self._query = ConsentQuery(store)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # -- audit helper -------------------------------------------------------

    async def _emit(self, consent_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Best-effort audit append; the consent write already succeeded."""
        if self._audit is None:
            return
        try:
            await asyncio.to_thread(self._audit.append, consent_id, event_type, payload)
        except Exception:
            logger.warning("audit_append_failed", event_type=event_type, consent_id=consent_id, exc_info=True)

    async def _store_call(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ConsentError:
            raise
        except Exception as exc:
            msg = f"Consent store failure: {exc}"
            raise PersistenceFailed(msg) from exc

    # -- create -------------------------------------------------------------

    async def create_consent(
        self,
        subject_id: str,
        purpose: ConsentPurpose | str,
        signer: Signer,
    ) -> Consent:
        """Sign and persist a new pending consent.

        Raises:
            Unauthorized: no signer identity is connected.
            InvalidInput: bad subject_id or unrecognised purpose.
            SigningFailed: the signer declined, failed, timed out or returned
                a signature that does not verify.
            PersistenceFailed: the store rejected the write.
        """
        identity = signer.identity
        if not identity:
            raise Unauthorized("Connect a signer before creating a consent")

        subject_id = validate_subject_id(subject_id)
        parsed_purpose = parse_purpose(purpose)
        message = build_consent_message(subject_id, parsed_purpose)

        try:
            result = await asyncio.wait_for(signer.sign(message), timeout=self._signing_timeout)
        except SignerError as exc:
            logger.info("consent_signing_failed", subject_id=subject_id, reason=type(exc).__name__)
            msg = f"Signer failed: {exc}"
            raise SigningFailed(msg) from exc
        except TimeoutError as exc:
            logger.info("consent_signing_failed", subject_id=subject_id, reason="timeout")
            raise SigningFailed("Signing timed out") from exc

        if not result.signature or not result.identity:
            raise SigningFailed("Signer returned an empty signature or identity")
        if result.identity != identity:
            raise SigningFailed("Signer identity changed during signing")
        if self._verifier is not None and not self._verifier.verify(
            message, result.signature, result.identity
        ):
            logger.warning("consent_signature_rejected", subject_id=subject_id, authorizer=identity)
            raise SigningFailed("Signature does not verify for the authorizer")

        consent = Consent(
            subject_id=subject_id,
            purpose=parsed_purpose,
            authorizer_address=result.identity,
            signature=result.signature,
            status=ConsentStatus.PENDING,
            ledger_reference=None,
            created_at=datetime.now(UTC),
        )
        stored: Consent = await self._store_call(self._store.create, consent)

        logger.info(
            "consent_created",
            consent_id=stored.id,
            subject_id=stored.subject_id,
            purpose=stored.purpose.value,
            authorizer=stored.authorizer_address,
            signature=stored.signature,
        )
        await self._emit(
            stored.id,  # type: ignore[arg-type]
            CONSENT_CREATED,
            {
                "subject_id": stored.subject_id,
                "purpose": stored.purpose.value,
                "authorizer_address": stored.authorizer_address,
            },
        )
        return stored

    # -- activate -----------------------------------------------------------

    def _lock_for(self, consent_id: str) -> asyncio.Lock:
        lock = self._locks.get(consent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[consent_id] = lock
        return lock

    async def activate_consent(self, consent_id: str, ledger_reference: str) -> Consent:
        """Move a pending consent to active with its ledger reference.

        Re-activating with the same reference returns the consent unchanged.

        Raises:
            InvalidInput: blank ledger reference, or the ledger does not
                confirm it (LedgerUnconfirmed).
            NotFound: no consent with this id.
            InvalidTransition: the consent is not pending (and not already
                active with this reference).
            PersistenceFailed: the store rejected the write.
            LedgerUnavailable: the ledger confirmer could not be reached.
        """
        if not isinstance(ledger_reference, str) or not ledger_reference.strip():
            raise InvalidInput("ledger_reference is required")

        if self._store.supports_conditional_update:
            return await self._activate(consent_id, ledger_reference)
        lock = self._lock_for(consent_id)
        async with lock:
            return await self._activate(consent_id, ledger_reference)

    def _settled(self, consent: Consent, ledger_reference: str) -> Consent | None:
        """Resolve a non-pending consent: idempotent success or rejection."""
        if consent.status is ConsentStatus.PENDING:
            return None
        if consent.is_active and consent.ledger_reference == ledger_reference:
            return consent
        logger.info(
            "consent_activation_rejected",
            consent_id=consent.id,
            status=consent.status.value,
        )
        if consent.is_active:
            msg = f"Consent {consent.id} is already active with a different ledger reference"
        else:
            msg = f"Consent {consent.id} cannot be activated from {consent.status}"
        raise InvalidTransition(msg)

    async def _activate(self, consent_id: str, ledger_reference: str) -> Consent:
        current = await self.get_consent(consent_id)
        settled = self._settled(current, ledger_reference)
        if settled is not None:
            return settled
        if not can_transition(current.status, ConsentStatus.ACTIVE):
            msg = f"Consent {consent_id} cannot be activated from {current.status}"
            raise InvalidTransition(msg)

        if self._ledger is not None and not await self._ledger.confirm(current, ledger_reference):
            msg = f"Ledger does not confirm {ledger_reference} for consent {consent_id}"
            raise LedgerUnconfirmed(msg)

        try:
            updated: Consent = await self._store_call(
                self._store.update,
                consent_id,
                {"status": ConsentStatus.ACTIVE, "ledger_reference": ledger_reference},
                expected_status=ConsentStatus.PENDING,
            )
        except StatusConflict:
            # Lost the race; the winner's result decides.
            winner = await self.get_consent(consent_id)
            settled = self._settled(winner, ledger_reference)
            if settled is None:  # pragma: no cover
                raise
            return settled

        logger.info("consent_activated", consent_id=consent_id, ledger_reference=ledger_reference)
        if self._on_activated is not None:
            self._on_activated(updated)
        await self._emit(consent_id, CONSENT_ACTIVATED, {"ledger_reference": ledger_reference})
        return updated

    # -- reads --------------------------------------------------------------

    async def get_consent(self, consent_id: str) -> Consent:
        consent: Consent | None = await self._store_call(self._store.get, consent_id)
        if consent is None:
            msg = f"Consent {consent_id} not found"
            raise NotFound(msg)
        return consent

    async def list_consents(
        self,
        subject_id: str | None = None,
        status: ConsentStatus | str | None = None,
    ) -> list[Consent]:
        try:
            return await self._query.list(subject_id=subject_id, status=status)
        except ConsentError:
            raise
        except Exception as exc:
            msg = f"Consent store failure: {exc}"
            raise PersistenceFailed(msg) from exc

    async def list_events(self, consent_id: str) -> list[dict[str, Any]]:
        await self.get_consent(consent_id)
        if self._audit is None:
            return []
        return await self._store_call(self._audit.list_events, consent_id)  # type: ignore[no-any-return]

    async def verify_consent(self, consent_id: str) -> bool:
        """Re-derive the signed message from the stored record and verify it."""
        if self._verifier is None:
            raise InvalidInput("No signature verifier is configured")
        consent = await self.get_consent(consent_id)
        message = build_consent_message(consent.subject_id, consent.purpose)
        return self._verifier.verify(message, consent.signature, consent.authorizer_address)
