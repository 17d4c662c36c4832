"""Consent domain model — purposes, statuses and the transition table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from cacm.errors import InvalidInput

__all__ = [
    "LEDGER_BACKED_STATES",
    "PURPOSE_SET_VERSION",
    "Consent",
    "ConsentPurpose",
    "ConsentStatus",
    "can_transition",
    "parse_purpose",
    "parse_status",
    "validate_subject_id",
]

# Bump when a purpose is added. Existing values are embedded in signed
# messages and must never be renamed.
PURPOSE_SET_VERSION = 1

MAX_SUBJECT_ID_LENGTH = 256


class ConsentPurpose(StrEnum):
    """Authorized purposes a data subject can consent to.

    To extend the set, add a member and bump ``PURPOSE_SET_VERSION``.
    """

    RESEARCH_STUDY = "Research Study Participation"
    RESEARCH_DATA_SHARING = "Data Sharing with Research Institution"
    THIRD_PARTY_ANALYTICS = "Third-Party Analytics Access"
    INSURANCE_PROVIDER = "Insurance Provider Access"


class ConsentStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"


_TRANSITIONS: dict[ConsentStatus, frozenset[ConsentStatus]] = {
    ConsentStatus.PENDING: frozenset({ConsentStatus.ACTIVE}),
    ConsentStatus.ACTIVE: frozenset(),
}

LEDGER_BACKED_STATES = frozenset({ConsentStatus.ACTIVE})


def can_transition(current: ConsentStatus, target: ConsentStatus) -> bool:
    """Return True if ``current -> target`` is a defined transition."""
    return target in _TRANSITIONS.get(current, frozenset())


def parse_purpose(value: ConsentPurpose | str) -> ConsentPurpose:
    """Map a purpose label to its enum member or raise InvalidInput."""
    if isinstance(value, ConsentPurpose):
        return value
    try:
        return ConsentPurpose(value)
    except ValueError:
        msg = f"Unrecognised purpose: {value!r}"
        raise InvalidInput(msg) from None


def validate_subject_id(subject_id: Any) -> str:
    """Accept a non-blank, single-line subject id of bounded length."""
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise InvalidInput("subject_id is required")
    if len(subject_id) > MAX_SUBJECT_ID_LENGTH:
        msg = f"subject_id exceeds {MAX_SUBJECT_ID_LENGTH} characters"
        raise InvalidInput(msg)
    if "\n" in subject_id or "\r" in subject_id:
        raise InvalidInput("subject_id must be a single line")
    return subject_id


def parse_status(value: ConsentStatus | str) -> ConsentStatus:
    if isinstance(value, ConsentStatus):
        return value
    try:
        return ConsentStatus(value)
    except ValueError:
        msg = f"Unrecognised status: {value!r}"
        raise InvalidInput(msg) from None


@dataclass(frozen=True)
class Consent:
    """Immutable consent snapshot.

    ``id`` is None until the store assigns one on create. A new snapshot is
    produced for every transition; fields other than ``status`` and
    ``ledger_reference`` never change after creation.
    """

    subject_id: str
    purpose: ConsentPurpose
    authorizer_address: str
    signature: str
    status: ConsentStatus = ConsentStatus.PENDING
    ledger_reference: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "purpose", parse_purpose(self.purpose))
        object.__setattr__(self, "status", parse_status(self.status))
        if not self.signature or not self.authorizer_address:
            raise InvalidInput("Consent requires a signature and an authorizer address")
        needs_reference = self.status in LEDGER_BACKED_STATES
        if needs_reference and not self.ledger_reference:
            msg = f"Status {self.status} requires a ledger reference"
            raise InvalidInput(msg)
        if not needs_reference and self.ledger_reference is not None:
            msg = f"Status {self.status} must not carry a ledger reference"
            raise InvalidInput(msg)

    @property
    def is_active(self) -> bool:
        return self.status is ConsentStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "purpose": self.purpose.value,
            "authorizer_address": self.authorizer_address,
            "signature": self.signature,
            "status": self.status.value,
            "ledger_reference": self.ledger_reference,
            "created_at": self.created_at.isoformat(),
        }
