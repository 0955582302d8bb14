"""
IntegrationContext — the one place the integration services are wired.

``build_context()`` constructs the vault, state manager, registry, token
managers and IntegrationManager once and hands them out by reference;
nothing in the connectors package keeps module-level instances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from config.settings import Settings, config
from connectors.base import IntegrationProvider
from connectors.encryption import CredentialVault
from connectors.github import GitHubProvider
from connectors.gitlab import GitLabProvider
from connectors.integration_manager import IntegrationManager
from connectors.jira import JiraProvider
from connectors.notion import NotionProvider
from connectors.oauth_state import OAuthStateManager
from connectors.registry import ProviderRegistry
from connectors.slack import SlackProvider
from connectors.store import IntegrationStore, RecordDirectory
from connectors.token_manager import TokenManager
from connectors.token_refresh import TokenRefreshManager
from connectors.trello import TrelloProvider

logger = logging.getLogger(__name__)


@dataclass
class IntegrationContext:
    settings: Settings
    vault: CredentialVault
    state_manager: OAuthStateManager
    registry: ProviderRegistry
    refresh_manager: TokenRefreshManager
    token_manager: TokenManager
    manager: IntegrationManager
    store: IntegrationStore
    records: RecordDirectory


def default_providers(
    settings: Settings,
    state_manager: OAuthStateManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[IntegrationProvider]:
    """All known providers — add new ones here."""
    return [
        SlackProvider(settings, state_manager=state_manager, transport=transport),
        JiraProvider(settings, state_manager=state_manager, transport=transport),
        GitHubProvider(settings, state_manager=state_manager, transport=transport),
        TrelloProvider(settings, state_manager=state_manager, transport=transport),
        NotionProvider(settings, state_manager=state_manager, transport=transport),
        GitLabProvider(settings, state_manager=state_manager, transport=transport),
    ]


def build_context(
    store: IntegrationStore,
    records: RecordDirectory,
    settings: Settings = config,
    *,
    providers: Optional[List[IntegrationProvider]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> IntegrationContext:
    """Wire the integration services; register every configured provider."""
    vault = CredentialVault(settings)
    state_manager = OAuthStateManager(settings)
    registry = ProviderRegistry()

    candidates = (
        providers
        if providers is not None
        else default_providers(settings, state_manager, transport)
    )
    for provider in candidates:
        if provider.is_configured():
            registry.register(provider)
        else:
            logger.warning(
                "Provider %s skipped — not configured (missing client credentials)",
                provider.name,
            )

    if not vault.is_configured():
        logger.warning(
            "INTEGRATION_ENCRYPTION_KEY missing or malformed — OAuth callbacks will fail "
            "until a 64-character hex key is set"
        )

    refresh_manager = TokenRefreshManager(registry, settings)
    token_manager = TokenManager(vault, refresh_manager, store)
    manager = IntegrationManager(
        registry, vault, state_manager, token_manager, store, records, settings
    )
    return IntegrationContext(
        settings=settings,
        vault=vault,
        state_manager=state_manager,
        registry=registry,
        refresh_manager=refresh_manager,
        token_manager=token_manager,
        manager=manager,
        store=store,
        records=records,
    )
