"""
Token manager — get / refresh / store per-integration OAuth tokens.

This is the single interface the fan-out and the providers' renewal hook
use to get an active token for an integration.  Refreshes are
single-flight per integration: concurrent callers share one in-flight
refresh and therefore one write of the rotated token.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from connectors.base import IntegrationProvider
from connectors.encryption import CredentialVault
from connectors.errors import (
    DecryptionError,
    IntegrationError,
    IntegrationNotFoundError,
    ReauthRequiredError,
)
from connectors.schemas import (
    Integration,
    IntegrationLogEntry,
    LogStatus,
    TokenData,
    TokenStorageResult,
    TokenValidationResult,
)
from connectors.store import IntegrationStore
from connectors.token_refresh import TokenRefreshManager

logger = logging.getLogger(__name__)


class TokenManager:
    def __init__(
        self,
        vault: CredentialVault,
        refresh_manager: TokenRefreshManager,
        store: IntegrationStore,
    ) -> None:
        self._vault = vault
        self._refresh_manager = refresh_manager
        self._store = store
        self._inflight: Dict[str, "asyncio.Task[TokenData]"] = {}

    # ── Storage ─────────────────────────────────────────────────────────

    async def store_token_data(self, integration_id: str, token: TokenData) -> TokenStorageResult:
        """Encrypt and persist ``token``. Reports failure instead of raising."""
        try:
            encrypted = self._vault.encrypt_token_data(token)
            await self._store.update_integration(
                integration_id,
                access_token=encrypted.encrypted_access_token,
                refresh_token=encrypted.encrypted_refresh_token,
                token_expires_at=encrypted.expires_at,
                scope=encrypted.scope,
                last_sync_at=datetime.now(timezone.utc),
                is_active=True,
            )
        except Exception as exc:
            logger.error("store_token_data failed for integration %s: %s", integration_id, exc)
            return TokenStorageResult(success=False, error=str(exc))
        return TokenStorageResult(success=True)

    def _decrypt(self, integration: Integration) -> Optional[TokenData]:
        encrypted = integration.encrypted_tokens()
        if encrypted is None:
            return None
        return self._vault.decrypt_token_data(encrypted)

    async def get_token_data(self, integration_id: str) -> Optional[TokenData]:
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            return None
        try:
            return self._decrypt(integration)
        except DecryptionError:
            logger.error("Stored tokens for integration %s could not be decrypted", integration_id)
            return None

    # ── Access ──────────────────────────────────────────────────────────

    async def get_valid_access_token(
        self,
        integration: Integration,
        provider: IntegrationProvider,
    ) -> Optional[str]:
        """
        Return a usable access token, refreshing it first when it is close
        to expiry.  ``None`` means the integration needs reauthorization
        (or its stored tokens are unreadable).
        """
        try:
            token = self._decrypt(integration)
        except DecryptionError:
            logger.error("Stored tokens for integration %s could not be decrypted", integration.id)
            return None
        if token is None:
            return None

        validation = self._vault.validate_token(token)
        if validation.is_valid and not validation.needs_refresh:
            return token.access_token

        if not token.refresh_token:
            if validation.is_valid:
                return token.access_token
            logger.info("Integration %s token expired and no refresh token is stored", integration.id)
            return None

        try:
            refreshed = await self.refresh(integration, provider)
        except ReauthRequiredError:
            return None
        except IntegrationError as exc:
            if validation.is_valid:
                logger.warning(
                    "Refresh for integration %s failed (%s); using current token",
                    integration.id,
                    exc,
                )
                return token.access_token
            return None
        return refreshed.access_token

    # ── Refresh ─────────────────────────────────────────────────────────

    async def refresh(self, integration: Integration, provider: IntegrationProvider) -> TokenData:
        """Refresh and persist the integration's token; one refresh per integration at a time."""
        key = integration.id
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(integration, provider))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[TokenData]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _refresh(self, integration: Integration, provider: IntegrationProvider) -> TokenData:
        latest = await self._store.get_integration(integration.id) or integration
        current = self._decrypt(latest)
        if current is None or not current.refresh_token:
            raise ReauthRequiredError(
                f"Integration {integration.id} has no refresh token; reconnect required"
            )

        try:
            fresh = await self._refresh_manager.refresh_token_with_retry(
                provider.name, current.refresh_token, integration=latest
            )
        except Exception as exc:
            await self.log_token_operation(integration.id, "token_refresh", LogStatus.ERROR, str(exc))
            raise

        # Providers that do not rotate refresh tokens omit them from the reply.
        updates = {}
        if not fresh.refresh_token:
            updates["refresh_token"] = current.refresh_token
        if fresh.scope is None:
            updates["scope"] = current.scope
        if updates:
            fresh = fresh.model_copy(update=updates)

        result = await self.store_token_data(integration.id, fresh)
        if not result.success:
            await self.log_token_operation(
                integration.id, "token_refresh", LogStatus.ERROR, result.error
            )
            raise IntegrationError(f"Failed to store refreshed token: {result.error}")

        await self.log_token_operation(integration.id, "token_refresh", LogStatus.SUCCESS)
        logger.info("Refreshed %s token for integration %s", provider.name, integration.id)
        return fresh

    # ── Revocation & checks ─────────────────────────────────────────────

    async def revoke_token(
        self,
        integration_id: str,
        provider: Optional[IntegrationProvider] = None,
    ) -> bool:
        """Best-effort remote revocation, then wipe the stored credentials."""
        try:
            token = await self.get_token_data(integration_id)
            if token and provider:
                try:
                    await provider.revoke_token(token.access_token)
                except Exception:
                    logger.warning("Remote revocation failed for %s", integration_id, exc_info=True)

            await self._store.update_integration(
                integration_id,
                access_token=None,
                refresh_token=None,
                token_expires_at=None,
                is_active=False,
            )
        except IntegrationNotFoundError:
            return False
        except Exception as exc:
            logger.error("revoke_token error for %s: %s", integration_id, exc)
            await self.log_token_operation(integration_id, "token_revoke", LogStatus.ERROR, str(exc))
            return False

        await self.log_token_operation(integration_id, "token_revoke", LogStatus.SUCCESS)
        return True

    async def validate_integration_token(self, integration_id: str) -> Optional[TokenValidationResult]:
        token = await self.get_token_data(integration_id)
        if token is None:
            return None
        return self._vault.validate_token(token)

    async def find_tokens_needing_refresh(self, tenant_id: str) -> List[str]:
        """Ids of the tenant's active integrations whose tokens are inside the refresh window."""
        now = datetime.now(timezone.utc)
        return [
            i.id
            for i in await self._store.list_integrations(tenant_id)
            if i.is_active and self._refresh_manager.is_within_refresh_window(i.token_expires_at, now)
        ]

    async def log_token_operation(
        self,
        integration_id: str,
        action: str,
        status: LogStatus,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            await self._store.append_log(
                integration_id,
                IntegrationLogEntry(action=action, status=status, error_message=error_message),
            )
        except Exception:
            logger.warning("Could not write %s log for %s", action, integration_id, exc_info=True)
