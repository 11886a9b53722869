# model/qrtoken.py
"""
Admission tokens.

The raw token goes into the QR image and is never stored; the server keeps
only HMAC-SHA256(secret, token). A leaked tickets table therefore cannot be
used to forge admission, as long as the process-wide secret stays secret.
"""
from __future__ import annotations
import hashlib
import hmac
import secrets
from typing import Optional, Tuple

TOKEN_BYTES = 32


class QrTokenService:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("QR token secret must not be empty")
        self._key = secret.encode()

    def _digest(self, token: str) -> str:
        return hmac.new(self._key, token.encode(), hashlib.sha256).hexdigest()

    def issue(self) -> Tuple[str, str]:
        """Return (token, hash)."""
        token = secrets.token_urlsafe(TOKEN_BYTES)
        return token, self._digest(token)

    def verify(self, token: Optional[str], stored_hash: Optional[str]) -> bool:
        # garbled scans are expected input: never raise
        if not token or not stored_hash or not isinstance(token, str):
            return False
        try:
            expected = self._digest(token)
        except (UnicodeEncodeError, TypeError):
            return False
        return hmac.compare_digest(expected, str(stored_hash))
