"""Typed failures for the consent lifecycle.

Every failure the core surfaces is a ``ConsentError`` subclass carrying a
stable machine-readable ``code``, the HTTP status the API maps it to, and
whether the caller may retry the same request unchanged.
"""

from __future__ import annotations

__all__ = [
    "ConsentError",
    "InvalidInput",
    "InvalidTransition",
    "LedgerUnavailable",
    "LedgerUnconfirmed",
    "NotFound",
    "PersistenceFailed",
    "SigningFailed",
    "StatusConflict",
    "Unauthorized",
]


class ConsentError(Exception):
    """Base class for all consent lifecycle failures."""

    code = "CONSENT_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidInput(ConsentError):
    """Malformed or missing required fields."""

    code = "INVALID_INPUT"
    http_status = 422


class LedgerUnconfirmed(InvalidInput):
    """The ledger does not confirm the reference for this consent."""

    code = "LEDGER_UNCONFIRMED"


class Unauthorized(ConsentError):
    """No signer identity is available for the caller."""

    code = "UNAUTHORIZED"
    http_status = 401


class SigningFailed(ConsentError):
    """The signer declined, broke, timed out or returned an unusable result."""

    code = "SIGNING_FAILED"
    http_status = 400
    retryable = True


class NotFound(ConsentError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(ConsentError):
    """Requested status change is not legal from the current status."""

    code = "INVALID_TRANSITION"
    http_status = 409


class PersistenceFailed(ConsentError):
    """The consent store is unavailable or rejected the write."""

    code = "PERSISTENCE_FAILED"
    http_status = 503
    retryable = True


class StatusConflict(PersistenceFailed):
    """A conditional update found a different status than expected."""

    code = "STATUS_CONFLICT"
    http_status = 409
    retryable = False


class LedgerUnavailable(ConsentError):
    """The ledger confirmation service could not be reached."""

    code = "LEDGER_UNAVAILABLE"
    http_status = 503
    retryable = True
