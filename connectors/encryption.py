"""
Credential vault — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library.  Each call draws a
fresh 128-bit IV which is prepended to the ciphertext; the result is
hex-encoded as ``iv || ciphertext || tag``.

The key is loaded from ``config.integration_encryption_key``
(env var: ``INTEGRATION_ENCRYPTION_KEY``) and must be exactly 64 hex
characters.  There is no plaintext fallback.  Generate a key with::

    python -c "from connectors.encryption import CredentialVault; print(CredentialVault.generate_key())"
"""

from __future__ import annotations

import hmac
import logging
import math
import re
import secrets
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import Settings, config
from connectors.errors import ConfigurationError, DecryptionError, ValidationError
from connectors.schemas import EncryptedTokenData, TokenData, TokenValidationResult

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16

_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class CredentialVault:
    """Authenticated encryption for token material, keyed once per process."""

    def __init__(self, settings: Settings = config) -> None:
        self._settings = settings
        self._key: Optional[bytes] = None

    # ── Key handling ────────────────────────────────────────────────────

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random key in the accepted format (64 hex chars)."""
        return secrets.token_hex(32)

    @staticmethod
    def _parse_key(key: str) -> bytes:
        if not key:
            raise ConfigurationError(
                "INTEGRATION_ENCRYPTION_KEY environment variable is required"
            )
        if not _KEY_PATTERN.match(key):
            raise ConfigurationError(
                "INTEGRATION_ENCRYPTION_KEY must be a 64-character hex string (32 bytes)"
            )
        return bytes.fromhex(key)

    def _resolve_key(self, key: Optional[str]) -> bytes:
        if key is not None:
            return self._parse_key(key)
        if self._key is None:
            self._key = self._parse_key(self._settings.integration_encryption_key)
            logger.info("Credential encryption enabled (AES-256-GCM)")
        return self._key

    def is_configured(self) -> bool:
        """Check whether a usable key is available."""
        try:
            self._resolve_key(None)
        except ConfigurationError:
            return False
        return True

    # ── Strings ─────────────────────────────────────────────────────────

    def encrypt(self, plaintext: str, key: Optional[str] = None) -> str:
        aes = AESGCM(self._resolve_key(key))
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = aes.encrypt(iv, plaintext.encode("utf-8"), None)
        return (iv + sealed).hex()

    def decrypt(self, ciphertext: str, key: Optional[str] = None) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Tampering, a wrong key, malformed hex and truncated input all raise
        the same ``DecryptionError`` so callers cannot tell them apart.
        """
        aes = AESGCM(self._resolve_key(key))
        try:
            raw = bytes.fromhex(ciphertext)
        except (TypeError, ValueError):
            raise DecryptionError() from None
        if len(raw) < IV_LENGTH + TAG_LENGTH:
            raise DecryptionError()

        iv, sealed = raw[:IV_LENGTH], raw[IV_LENGTH:]
        try:
            return aes.decrypt(iv, sealed, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            raise DecryptionError() from None

    # ── Token records ───────────────────────────────────────────────────

    def encrypt_token_data(self, token: TokenData) -> EncryptedTokenData:
        if not token.access_token:
            raise ValidationError("Access token is required")

        return EncryptedTokenData(
            encrypted_access_token=self.encrypt(token.access_token),
            encrypted_refresh_token=(
                self.encrypt(token.refresh_token) if token.refresh_token else None
            ),
            expires_at=token.expires_at,
            scope=token.scope,
        )

    def decrypt_token_data(self, encrypted: EncryptedTokenData) -> TokenData:
        return TokenData(
            access_token=self.decrypt(encrypted.encrypted_access_token),
            refresh_token=(
                self.decrypt(encrypted.encrypted_refresh_token)
                if encrypted.encrypted_refresh_token
                else None
            ),
            expires_at=encrypted.expires_at,
            scope=encrypted.scope,
        )

    # ── Checks ──────────────────────────────────────────────────────────

    def validate_token(
        self, token: TokenData, now: Optional[datetime] = None
    ) -> TokenValidationResult:
        if token.expires_at is None:
            return TokenValidationResult(
                is_valid=True, is_expired=False, needs_refresh=False
            )

        now = now or datetime.now(timezone.utc)
        remaining = (token.expires_at - now).total_seconds()
        is_expired = now >= token.expires_at
        threshold = self._settings.token_refresh_threshold_seconds

        return TokenValidationResult(
            is_valid=not is_expired,
            is_expired=is_expired,
            expires_in=max(0, math.ceil(remaining)),
            needs_refresh=not is_expired and remaining <= threshold,
        )

    @staticmethod
    def secure_compare(a: str, b: str) -> bool:
        """Constant-time equality; unequal lengths are rejected up front."""
        if len(a) != len(b):
            return False
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
