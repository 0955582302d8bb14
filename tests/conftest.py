"""
Shared fixtures: settings with test secrets, in-memory store / record
directory, and a scriptable provider.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from config.settings import Settings
from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.encryption import CredentialVault
from connectors.errors import ConnectionNotFoundError, IntegrationNotFoundError, ProviderAPIError
from connectors.integration_manager import IntegrationManager
from connectors.oauth_state import OAuthStateManager
from connectors.registry import ProviderRegistry
from connectors.schemas import (
    ActorSnapshot,
    Channel,
    Connection,
    Integration,
    IntegrationLogEntry,
    LogStatus,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    RecordSnapshot,
    TokenData,
)
from connectors.store import IntegrationStore, RecordDirectory
from connectors.token_manager import TokenManager
from connectors.token_refresh import TokenRefreshManager


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        integration_encryption_key=CredentialVault.generate_key(),
        oauth_state_secret="test-state-secret",
        slack_client_id="slack-id",
        slack_client_secret="slack-secret",
        jira_client_id="jira-id",
        jira_client_secret="jira-secret",
        github_client_id="gh-id",
        github_client_secret="gh-secret",
        trello_api_key="trello-key",
        trello_api_secret="trello-secret",
        notion_client_id="notion-id",
        notion_client_secret="notion-secret",
        gitlab_client_id="gl-id",
        gitlab_client_secret="gl-secret",
        app_base_url="https://app.example.com",
        token_refresh_retry_delays=[1.0, 2.0, 4.0],
    )
    values.update(overrides)
    return Settings(**values)


# ── In-memory collaborators ────────────────────────────────────────────


class InMemoryIntegrationStore(IntegrationStore):
    def __init__(self) -> None:
        self.integrations: Dict[str, Integration] = {}
        self.connections: Dict[str, Connection] = {}
        self.logs: Dict[str, List[IntegrationLogEntry]] = {}

    async def create_integration(self, integration: Integration) -> Integration:
        self.integrations[integration.id] = integration
        return integration

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        return self.integrations.get(integration_id)

    async def find_integration(self, tenant_id: str, provider_name: str) -> Optional[Integration]:
        for i in self.integrations.values():
            if i.tenant_id == tenant_id and i.provider_name == provider_name:
                return i
        return None

    async def list_integrations(
        self, tenant_id: str, category: Optional[ProviderCategory] = None
    ) -> List[Integration]:
        return [
            i
            for i in self.integrations.values()
            if i.tenant_id == tenant_id and (category is None or i.category == category)
        ]

    async def update_integration(self, integration_id: str, **changes: Any) -> Integration:
        if integration_id not in self.integrations:
            raise IntegrationNotFoundError(integration_id)
        changes["updated_at"] = datetime.now(timezone.utc)
        updated = self.integrations[integration_id].model_copy(update=changes)
        self.integrations[integration_id] = updated
        return updated

    async def delete_integration(self, integration_id: str) -> bool:
        self.logs.pop(integration_id, None)
        for cid in [c.id for c in self.connections.values() if c.integration_id == integration_id]:
            del self.connections[cid]
        return self.integrations.pop(integration_id, None) is not None

    async def create_connection(self, connection: Connection) -> Connection:
        self.connections[connection.id] = connection
        return connection

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    async def list_connections(
        self,
        *,
        record_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Connection]:
        return [
            c
            for c in self.connections.values()
            if (record_id is None or c.record_id == record_id)
            and (integration_id is None or c.integration_id == integration_id)
            and (not active_only or c.is_active)
        ]

    async def update_connection(self, connection_id: str, **changes: Any) -> Connection:
        if connection_id not in self.connections:
            raise ConnectionNotFoundError(connection_id)
        updated = self.connections[connection_id].model_copy(update=changes)
        self.connections[connection_id] = updated
        return updated

    async def delete_connection(self, connection_id: str) -> bool:
        return self.connections.pop(connection_id, None) is not None

    async def delete_connections_for_integration(self, integration_id: str) -> int:
        doomed = [c.id for c in self.connections.values() if c.integration_id == integration_id]
        for cid in doomed:
            del self.connections[cid]
        return len(doomed)

    async def append_log(self, integration_id: str, entry: IntegrationLogEntry) -> None:
        self.logs.setdefault(integration_id, []).append(entry)

    def _filtered(self, integration_id, since, status) -> List[IntegrationLogEntry]:
        entries = [
            e
            for e in self.logs.get(integration_id, [])
            if (since is None or e.timestamp >= since) and (status is None or e.status == status)
        ]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    async def list_logs(self, integration_id, *, since=None, status=None, limit=None):
        entries = self._filtered(integration_id, since, status)
        return entries[:limit] if limit is not None else entries

    async def count_logs(self, integration_id, *, since=None, status=None) -> int:
        return len(self._filtered(integration_id, since, status))

    def actions(self, integration_id: str) -> List[tuple]:
        return [(e.action, e.status) for e in self.logs.get(integration_id, [])]


class InMemoryRecordDirectory(RecordDirectory):
    def __init__(self) -> None:
        self.records: Dict[str, RecordSnapshot] = {}
        self.actors: Dict[str, ActorSnapshot] = {}
        self.record_lookups = 0
        self.actor_lookups = 0

    async def get_record(self, record_id: str) -> Optional[RecordSnapshot]:
        self.record_lookups += 1
        return self.records.get(record_id)

    async def get_actor(self, actor_id: str) -> Optional[ActorSnapshot]:
        self.actor_lookups += 1
        return self.actors.get(actor_id)


class FakeProvider(IntegrationProvider):
    """Provider whose remote side is a handful of attributes."""

    def __init__(self, settings: Settings, **kwargs: Any) -> None:
        super().__init__(settings, **kwargs)
        self.channels = [
            Channel(id="C1", name="general"),
            Channel(id="C2", name="random"),
        ]
        self.failing_channels: set = set()
        self.invalid_channels: set = set()
        self.posted: List[tuple] = []
        self.callback_token = TokenData(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="read write",
            metadata={"workspace": "acme"},
        )
        self.refreshed: List[str] = []
        self.revoked: List[str] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def display_name(self) -> str:
        return "Fake"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.COMMUNICATION

    async def get_auth_url(self, tenant_id, redirect_uri, extra=None) -> str:
        return f"https://fake.example/authorize?state={self.resolve_state(tenant_id, redirect_uri, extra)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        return self.callback_token

    async def refresh_token(self, refresh_token: str) -> TokenData:
        self.refreshed.append(refresh_token)
        return TokenData(
            access_token=f"access-{len(self.refreshed) + 1}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        return True

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        return copy.deepcopy(self.channels)

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        channel_id = target.connection.external_id
        if channel_id in self.failing_channels:
            raise ProviderAPIError("channel_not_found", status_code=404)
        self.posted.append((channel_id, target.credentials.access_token, message))

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        return target.connection.external_id not in self.invalid_channels


# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def vault(settings) -> CredentialVault:
    return CredentialVault(settings)


@pytest.fixture
def state_manager(settings) -> OAuthStateManager:
    return OAuthStateManager(settings)


@pytest.fixture
def store() -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore()


@pytest.fixture
def records() -> InMemoryRecordDirectory:
    directory = InMemoryRecordDirectory()
    directory.records["rec-1"] = RecordSnapshot(
        id="rec-1", tenant_id="tenant-1", title="Launch plan", content="Ship it on Monday"
    )
    directory.actors["user-1"] = ActorSnapshot(id="user-1", name="Ada Lovelace")
    return directory


@pytest.fixture
def provider(settings, state_manager) -> FakeProvider:
    return FakeProvider(settings, state_manager=state_manager)


@pytest.fixture
def registry(provider) -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(provider)
    return reg


@pytest.fixture
def no_sleep():
    calls: List[float] = []

    async def _sleep(delay: float) -> None:
        calls.append(delay)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def refresh_manager(registry, settings, no_sleep) -> TokenRefreshManager:
    return TokenRefreshManager(registry, settings, sleep=no_sleep)


@pytest.fixture
def token_manager(vault, refresh_manager, store) -> TokenManager:
    return TokenManager(vault, refresh_manager, store)


@pytest.fixture
def manager(registry, vault, state_manager, token_manager, store, records, settings) -> IntegrationManager:
    return IntegrationManager(registry, vault, state_manager, token_manager, store, records, settings)


@pytest.fixture
def make_integration(vault, store):
    """Persist an integration for ``tenant-1`` holding encrypted ``token``."""

    async def _make(
        token: Optional[TokenData] = None,
        *,
        provider_name: str = "fake",
        tenant_id: str = "tenant-1",
        config: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> Integration:
        token = token or TokenData(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        encrypted = vault.encrypt_token_data(token)
        integration = Integration(
            id=f"int-{len(store.integrations) + 1}",
            tenant_id=tenant_id,
            provider_name=provider_name,
            category=ProviderCategory.COMMUNICATION,
            access_token=encrypted.encrypted_access_token,
            refresh_token=encrypted.encrypted_refresh_token,
            token_expires_at=encrypted.expires_at,
            scope=encrypted.scope,
            config=config or {},
            is_active=is_active,
        )
        return await store.create_integration(integration)

    return _make
