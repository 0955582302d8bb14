"""
Error taxonomy for the integration layer.

Every error raised by the connectors package derives from
``IntegrationError`` so route handlers and callers can catch the family
in one place and still branch on the concrete class.
"""

from __future__ import annotations

from typing import Optional


class IntegrationError(Exception):
    """Base class for all integration failures."""


class ConfigurationError(IntegrationError):
    """Missing or malformed secrets / provider credentials. Never retried."""


class ValidationError(IntegrationError):
    """Malformed caller input (empty token, invalid provider config, …)."""


class InvalidStateError(IntegrationError):
    """OAuth state is empty, malformed, or was issued for another flow."""


class InvalidSignatureError(InvalidStateError):
    """OAuth state signature does not match its payload."""


class ExpiredStateError(InvalidStateError):
    """OAuth state is older than the validity window."""


class DecryptionError(IntegrationError):
    """Ciphertext could not be authenticated. The message never says why."""

    def __init__(self, message: str = "Failed to decrypt token data") -> None:
        super().__init__(message)


class ProviderNotFoundError(IntegrationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Integration provider '{name}' not found")
        self.name = name


class ChannelNotFoundError(IntegrationError):
    def __init__(self, channel_id: str) -> None:
        super().__init__(f"Channel '{channel_id}' not found or not accessible")
        self.channel_id = channel_id


class IntegrationNotFoundError(IntegrationError):
    def __init__(self, integration_id: str) -> None:
        super().__init__(f"Integration '{integration_id}' not found")
        self.integration_id = integration_id


class ConnectionNotFoundError(IntegrationError):
    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection '{connection_id}' not found")
        self.connection_id = connection_id


class RecordNotFoundError(IntegrationError):
    pass


class UnsupportedOperationError(IntegrationError):
    """The provider does not implement the requested capability."""


class ProviderAPIError(IntegrationError):
    """A provider API answered with an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RetryableProviderError(ProviderAPIError):
    """Transient provider failure: HTTP 429 / 5xx or a network error."""


class ReauthRequiredError(IntegrationError):
    """The stored grant can no longer be refreshed; the user must reconnect."""


class OAuthCallbackError(IntegrationError):
    """The provider redirected back with an error, or the exchange failed."""


class DuplicateConnectionError(ValidationError):
    """The record is already connected to this destination."""
