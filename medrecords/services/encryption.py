"""
Sealed tokens for scannable emergency payloads.

Fernet gives us AES encryption plus an HMAC, so a token can neither be read
nor altered without the key. Tokens are opaque to whoever holds them; the
server is always the one to open them.
"""

import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from medrecords.config import settings
from medrecords.errors import ValidationError


class EncryptionService:
    """Wraps Fernet symmetric encryption for emergency tokens."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.EMERGENCY_TOKEN_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: tokens will not survive a restart. In production
            # the key MUST come from a secrets manager via EMERGENCY_TOKEN_KEY.
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return the url-safe token."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Open a token; tampered, foreign-key or malformed tokens raise ValidationError."""
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise ValidationError("Token is invalid or has been tampered with") from None

    def seal(self, claims: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(claims, sort_keys=True, default=str))

    def unseal(self, token: str) -> dict[str, Any]:
        plaintext = self.decrypt(token)
        try:
            claims = json.loads(plaintext)
        except json.JSONDecodeError:
            raise ValidationError("Token payload is not valid JSON") from None
        if not isinstance(claims, dict):
            raise ValidationError("Token payload must be an object")
        return claims
