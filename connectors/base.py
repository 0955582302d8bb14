"""
IntegrationProvider — abstract interface for every external service.

Each provider (Slack, Jira, GitHub, Trello, Notion, GitLab) subclasses this in its own
module and implements the OAuth exchange plus the channel / message
operations.  Providers never decrypt or refresh tokens themselves: the
caller hands them ready-to-use ``ProviderCredentials``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel

from config.settings import Settings, config
from connectors.errors import ConfigurationError
from connectors.oauth_state import OAuthStateManager
from connectors.schemas import (
    Channel,
    Connection,
    ConnectionConfigBase,
    Integration,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    ProviderConfigBase,
    TokenData,
)


@dataclass
class ProviderCredentials:
    """Decrypted access token bound to its integration."""

    integration: Integration
    access_token: str
    # Yields fresh credentials after a forced refresh; None when not renewable.
    renew: Optional[Callable[[], Awaitable["ProviderCredentials"]]] = None

    def __repr__(self) -> str:
        return f"ProviderCredentials(integration={self.integration.id!r})"


@dataclass
class ConnectionTarget:
    """A connection together with the credentials to post through it."""

    connection: Connection
    credentials: ProviderCredentials

    @property
    def integration(self) -> Integration:
        return self.credentials.integration


class IntegrationProvider(ABC):
    """Abstract base for all integration providers."""

    config_model: Type[ProviderConfigBase] = ProviderConfigBase
    connection_config_model: Type[ConnectionConfigBase] = ConnectionConfigBase

    def __init__(
        self,
        settings: Settings = config,
        *,
        state_manager: Optional[OAuthStateManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.state_manager = state_manager
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique slug: 'slack', 'jira', 'github', 'trello', …"""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def category(self) -> ProviderCategory:
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def icon(self) -> str:
        """Optional emoji / icon for UI."""
        return "🔗"

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_auth_url(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Build the provider's authorization URL.

        Parameters
        ----------
        tenant_id : str
            Tenant the resulting integration will belong to.
        redirect_uri : str
            Callback URL registered with the provider.
        extra : dict, optional
            Flow extras.  ``extra["state"]`` carries the signed state
            string minted by the caller.
        """
        ...

    @abstractmethod
    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        """
        Exchange the callback parameters for tokens.

        ``TokenData.metadata`` carries whatever the provider needs in its
        integration config (workspace, cloud id, user profile, …).
        """
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenData:
        """
        Refresh an access token.

        Raises ``UnsupportedOperationError`` when the provider's tokens
        cannot be refreshed.
        """
        ...

    async def refresh_integration_token(
        self, refresh_token: str, integration: Integration
    ) -> TokenData:
        """Refresh with the integration at hand; providers whose token
        endpoint depends on the integration config override this."""
        return await self.refresh_token(refresh_token)

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    async def callback_state(self, params: OAuthCallbackParams) -> Optional[str]:
        """Return the signed state string that belongs to this callback."""
        return params.state

    # ── Channels & messages ─────────────────────────────────────────────

    @abstractmethod
    async def get_available_channels(
        self, credentials: ProviderCredentials
    ) -> List[Channel]:
        ...

    @abstractmethod
    async def post_message(
        self, target: ConnectionTarget, message: MessageData
    ) -> None:
        ...

    @abstractmethod
    async def validate_connection(self, target: ConnectionTarget) -> bool:
        """True when the connection's destination is still reachable. Never raises."""
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def resolve_state(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Use the caller's signed state, or mint one when none was given."""
        extra = dict(extra or {})
        state = extra.pop("state", None)
        if state:
            return state
        if self.state_manager is None:
            raise ConfigurationError(
                f"{self.display_name} needs a signed OAuth state but no state manager is set"
            )
        extra.setdefault("redirect_uri", redirect_uri)
        return self.state_manager.generate_state(tenant_id, self.name, extra=extra)

    async def prepare_config(
        self,
        config_data: Dict[str, Any],
        credentials: Callable[[], Awaitable[ProviderCredentials]],
    ) -> Dict[str, Any]:
        """
        Complete a config update before it is validated and stored.

        ``credentials`` is only awaited by providers that need to call
        their API (e.g. to resolve a user id into a profile).
        """
        return config_data

    def get_config_schema(self) -> Dict[str, Any]:
        return self.config_model.model_json_schema()

    def is_configured(self) -> bool:
        """
        Return True if this provider has all required config
        (client IDs, secrets, …).
        """
        return True

    def build_config(self, data: Dict[str, Any]) -> BaseModel:
        return self.config_model.model_validate(data)

    def build_connection_config(self, data: Dict[str, Any]) -> BaseModel:
        return self.connection_config_model.model_validate(data)

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.http_timeout_seconds,
            **kwargs,
        )
