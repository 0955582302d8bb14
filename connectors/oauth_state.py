"""
Signed, expiring OAuth state tokens (CSRF protection).

Wire format::

    base64url(JSON payload) + "." + hex(HMAC-SHA256(secret, payload_b64))

The payload always carries ``tenant_id``, ``provider_name``,
``redirect_url``, ``timestamp`` (epoch ms) and a random ``nonce``; any
extras the caller passes ride along but can never override those keys.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from config.settings import Settings, config
from connectors.encryption import CredentialVault
from connectors.errors import (
    ConfigurationError,
    ExpiredStateError,
    InvalidSignatureError,
    InvalidStateError,
)
from connectors.schemas import OAuthState

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class OAuthStateManager:
    """Mint and verify state strings for every OAuth flow."""

    def __init__(
        self,
        settings: Settings = config,
        *,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._secret = settings.oauth_state_secret
        self._ttl_ms = settings.oauth_state_ttl_seconds * 1000
        self._clock = clock

    def _sign(self, payload_b64: str) -> str:
        if not self._secret:
            raise ConfigurationError("OAUTH_STATE_SECRET environment variable is required")
        return hmac.new(
            self._secret.encode(), payload_b64.encode(), hashlib.sha256
        ).hexdigest()

    def generate_state(
        self,
        tenant_id: str,
        provider_name: str,
        redirect_url: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = dict(extra or {})
        payload.update(
            tenant_id=tenant_id,
            provider_name=provider_name,
            redirect_url=redirect_url,
            timestamp=self._clock(),
            nonce=secrets.token_hex(16),
        )
        raw = json.dumps(payload, separators=(",", ":"), default=str).encode()
        payload_b64 = urlsafe_b64encode(raw).decode()
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def validate_state(self, state: Optional[str]) -> OAuthState:
        """
        Verify signature and age of a state string and return its payload.

        Raises
        ------
        InvalidStateError       empty, malformed, or missing required fields
        InvalidSignatureError   payload was signed with another secret or altered
        ExpiredStateError       older than the validity window
        """
        if not state:
            raise InvalidStateError("OAuth state is missing")

        payload_b64, sep, signature = state.rpartition(".")
        if not sep or not payload_b64 or not signature:
            raise InvalidStateError("Invalid state format")

        expected = self._sign(payload_b64)
        if not CredentialVault.secure_compare(signature, expected):
            raise InvalidSignatureError("Invalid state signature")

        try:
            decoded = json.loads(urlsafe_b64decode(payload_b64.encode()))
            parsed = OAuthState.model_validate(decoded)
        except (ValueError, TypeError, PydanticValidationError) as exc:
            raise InvalidStateError("Invalid state payload") from exc

        age_ms = self._clock() - parsed.timestamp
        if age_ms > self._ttl_ms:
            logger.info(
                "Rejected expired OAuth state for %s (age %.0fs)",
                parsed.provider_name,
                age_ms / 1000,
            )
            raise ExpiredStateError("OAuth state has expired")

        return parsed
