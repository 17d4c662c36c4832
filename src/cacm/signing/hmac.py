"""HMAC-SHA256 signing of raw webhook bodies."""

from __future__ import annotations

import hashlib
import hmac as hmac_mod

__all__ = ["sign_body", "verify_body_signature"]

_PREFIX = "sha256="


def sign_body(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature header value for *body*."""
    return _PREFIX + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_body_signature(body: bytes, secret: str, signature_header: str) -> bool:
    """Constant-time check of a ``sha256=`` signature header."""
    if not secret or not signature_header.startswith(_PREFIX):
        return False
    return hmac_mod.compare_digest(sign_body(body, secret), signature_header)
