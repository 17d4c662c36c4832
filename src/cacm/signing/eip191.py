"""Ethereum wallet signatures (EIP-191 ``personal_sign``).

This is what browser wallets such as MetaMask produce for ``signMessage``.
Identities are ``0x``-prefixed 20-byte addresses; a signature is valid when
the address recovered from it matches the identity, ignoring checksum case.
"""

from __future__ import annotations

import logging
import re

from eth_account import Account
from eth_account.messages import encode_defunct

from cacm.signing.signer import SignatureResult

__all__ = ["Eip191Signer", "Eip191Verifier", "is_address"]

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.fullmatch(value))


class Eip191Signer:
    """Local Ethereum key, for service-held wallets, dev and tests."""

    def __init__(self, private_key: str | None = None) -> None:
        self._account = Account.from_key(private_key) if private_key else Account.create()

    @property
    def identity(self) -> str:
        return str(self._account.address)

    async def sign(self, message: str) -> SignatureResult:
        signed = self._account.sign_message(encode_defunct(text=message))
        return SignatureResult(signature="0x" + bytes(signed.signature).hex(), identity=self.identity)


class Eip191Verifier:
    def verify(self, message: str, signature: str, identity: str) -> bool:
        if not is_address(identity) or not signature:
            return False
        try:
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        # Malformed signatures surface as assorted eth-keys/eth-utils errors.
        except Exception:  # noqa: BLE001
            logger.debug("Unrecoverable signature for %s", identity, exc_info=True)
            return False
        return str(recovered).lower() == identity.lower()
