"""Signer capability — the key holder that authorizes a consent."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

__all__ = [
    "AttestedSigner",
    "SignatureResult",
    "SignatureVerifier",
    "Signer",
    "SignerDeclined",
    "SignerError",
    "SignerTransportError",
]


class SignerError(Exception):
    """Base class for failures raised by a Signer."""


class SignerDeclined(SignerError):
    """The key holder refused to sign."""


class SignerTransportError(SignerError):
    """The signer could not be reached or broke mid-request."""


@dataclass(frozen=True)
class SignatureResult:
    signature: str
    identity: str


class Signer(Protocol):
    """A key holder bound to an already-authenticated caller.

    ``identity`` is the public identity of the connected key holder, or an
    empty string / None when nobody is connected.
    """

    @property
    def identity(self) -> str | None:
        ...

    async def sign(self, message: str) -> SignatureResult:
        """Sign *message*. May block on user interaction."""
        ...


class SignatureVerifier(Protocol):
    """Checks that *signature* was made by *identity* over *message*."""

    def verify(self, message: str, signature: str, identity: str) -> bool:
        ...


class AttestedSigner:
    """Signer for a signature the caller's wallet already produced.

    Used at the HTTP boundary, where signing happens in the client. The
    result is only as trustworthy as the verifier that checks it.
    """

    def __init__(self, identity: str | None, signature: str) -> None:
        self._identity = identity
        self._signature = signature

    @property
    def identity(self) -> str | None:
        return self._identity

    async def sign(self, message: str) -> SignatureResult:
        if not self._signature:
            raise SignerDeclined("No signature was supplied")
        return SignatureResult(signature=self._signature, identity=self._identity or "")
