"""Canonical forms: the signed consent statement and ledger digests."""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

from cacm.errors import InvalidInput

if TYPE_CHECKING:
    from cacm.consent import Consent, ConsentPurpose

__all__ = ["MESSAGE_TEMPLATE", "build_consent_message", "canonicalise", "consent_digest"]

MESSAGE_TEMPLATE = "I consent to: {purpose} for patient: {subject_id}"


def build_consent_message(subject_id: str, purpose: ConsentPurpose | str) -> str:
    """Render the authorization statement that the key holder signs.

    Both fields are embedded verbatim so that re-deriving the message from a
    stored consent yields byte-identical output.

    Raises:
        InvalidInput: if either field is empty.
    """
    purpose_label = getattr(purpose, "value", purpose)
    if not subject_id or not purpose_label:
        raise InvalidInput("subject_id and purpose are required")
    return MESSAGE_TEMPLATE.format(purpose=purpose_label, subject_id=subject_id)


def canonicalise(payload: dict[str, Any], exclude_keys: set[str] | None = None) -> str:
    """Produce canonical JSON: sorted keys, no whitespace, excluded keys removed."""
    if exclude_keys:
        payload = {k: v for k, v in payload.items() if k not in exclude_keys}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def consent_digest(consent: Consent) -> str:
    """SHA-256 over the immutable fields of a persisted consent.

    This is the memo a ledger transaction must carry to confirm the consent.
    """
    material = canonicalise(
        {
            "id": consent.id,
            "subject_id": consent.subject_id,
            "purpose": consent.purpose.value,
            "authorizer_address": consent.authorizer_address,
            "signature": consent.signature,
        }
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
