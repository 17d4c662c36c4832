"""Ed25519 key holder and verifier.

Identities are the lowercase hex encoding of the 32-byte public key and
signatures are hex encoded.
"""

from __future__ import annotations

import hmac

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from cacm.signing.signer import SignatureResult

__all__ = [
    "Ed25519Signer",
    "Ed25519Verifier",
    "generate_private_key_hex",
    "public_key_hex",
]


def generate_private_key_hex() -> str:
    key = Ed25519PrivateKey.generate()
    raw = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return raw.hex()


def public_key_hex(private_key_hex: str) -> str:
    key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex))
    raw = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return raw.hex()


class Ed25519Signer:
    """Local key holder, for service-held keys, dev and tests."""

    def __init__(self, private_key_hex: str) -> None:
        self._key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex))
        self._identity = public_key_hex(private_key_hex)

    @property
    def identity(self) -> str:
        return self._identity

    async def sign(self, message: str) -> SignatureResult:
        signature = self._key.sign(message.encode("utf-8"))
        return SignatureResult(signature=signature.hex(), identity=self._identity)


class Ed25519Verifier:
    def verify(self, message: str, signature: str, identity: str) -> bool:
        try:
            public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(identity))
            raw_signature = bytes.fromhex(signature)
        except ValueError:
            return False
        try:
            public_key.verify(raw_signature, message.encode("utf-8"))
        except InvalidSignature:
            return False
        # Reject non-canonical hex spellings of an otherwise valid signature.
        return hmac.compare_digest(raw_signature.hex(), signature.lower())
