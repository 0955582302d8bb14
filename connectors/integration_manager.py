"""
IntegrationManager — orchestrates the integration lifecycle.

OAuth start / callback, integration and connection CRUD, and the fan-out
that turns one record change into a message on every connected
destination.  A failing destination never affects the others: each one
is posted, logged and accounted for independently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from config.settings import Settings, config
from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.encryption import CredentialVault
from connectors.errors import (
    ChannelNotFoundError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    IntegrationError,
    IntegrationNotFoundError,
    InvalidStateError,
    OAuthCallbackError,
    ReauthRequiredError,
    RecordNotFoundError,
    ValidationError,
)
from connectors.oauth_state import OAuthStateManager
from connectors.registry import ProviderRegistry
from connectors.schemas import (
    ChangeKind,
    Channel,
    ConnectRecordParams,
    Connection,
    ConnectionValidationSummary,
    FanOutResult,
    Integration,
    IntegrationLogEntry,
    IntegrationStats,
    IntegrationStatus,
    IntegrationStatusReport,
    LogStatus,
    MessageData,
    OAuthCallbackParams,
    OAuthInitiation,
    ProviderCategory,
    RecordSnapshot,
    TokenData,
)
from connectors.store import IntegrationStore, RecordDirectory
from connectors.token_manager import TokenManager
from connectors.utils import truncate_text

logger = logging.getLogger(__name__)

_RECENT_ERRORS_LIMIT = 10
_ACTIVITY_WINDOW = timedelta(days=7)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class IntegrationManager:
    def __init__(
        self,
        registry: ProviderRegistry,
        vault: CredentialVault,
        state_manager: OAuthStateManager,
        token_manager: TokenManager,
        store: IntegrationStore,
        records: RecordDirectory,
        settings: Settings = config,
    ) -> None:
        self.registry = registry
        self._vault = vault
        self._state_manager = state_manager
        self._tokens = token_manager
        self._store = store
        self._records = records
        self._settings = settings

    # ── Validation helpers ──────────────────────────────────────────────

    @staticmethod
    def _validated_config(provider: IntegrationProvider, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            model = provider.build_config(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {provider.display_name} configuration: {exc}") from exc
        return model.model_dump(mode="json", exclude_none=True)

    @staticmethod
    def _validated_connection_config(
        provider: IntegrationProvider, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        try:
            model = provider.build_connection_config(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid {provider.display_name} connection configuration: {exc}"
            ) from exc
        return model.model_dump(mode="json", exclude_none=True)

    async def _require_integration(self, integration_id: str) -> Integration:
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            raise IntegrationNotFoundError(integration_id)
        return integration

    async def _require_active_integration(self, integration_id: str) -> Integration:
        integration = await self._require_integration(integration_id)
        if not integration.is_active:
            raise ValidationError(f"Integration '{integration_id}' is inactive")
        return integration

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def initiate_oauth(
        self,
        tenant_id: str,
        provider_name: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> OAuthInitiation:
        provider = self.registry.get(provider_name)
        flow_extra = dict(extra or {})
        flow_extra["redirect_uri"] = redirect_uri
        state = self._state_manager.generate_state(
            tenant_id, provider_name, redirect_url=redirect_uri, extra=flow_extra
        )
        auth_url = await provider.get_auth_url(
            tenant_id, redirect_uri, {**flow_extra, "state": state}
        )
        logger.info("OAuth started for tenant %s with %s", tenant_id, provider_name)
        return OAuthInitiation(auth_url=auth_url, state=state)

    async def handle_oauth_callback(
        self, provider_name: str, params: OAuthCallbackParams
    ) -> Integration:
        """
        Complete an OAuth flow and persist the resulting integration.

        The provider's ``error`` short-circuits before any exchange.  The
        signed state must validate, name this provider, and (when the
        caller knows it) belong to ``params.tenant_id``.
        """
        provider = self.registry.get(provider_name)

        if params.error:
            raise OAuthCallbackError(
                f"OAuth error: {params.error} - {params.error_description or 'Unknown error'}"
            )

        raw_state = await provider.callback_state(params)
        state = self._state_manager.validate_state(raw_state)
        if state.provider_name != provider_name:
            raise InvalidStateError("Provider name mismatch in OAuth state")
        if params.tenant_id and params.tenant_id != state.tenant_id:
            raise InvalidStateError("Tenant mismatch in OAuth state")

        token = await provider.handle_callback(params.model_copy(update={"state_data": state}))

        config_data = {**state.extra, **token.metadata, "scope": token.scope}
        existing = await self._store.find_integration(state.tenant_id, provider_name)
        if existing is not None:
            integration = await self._replace_credentials(existing, provider, token, config_data)
        else:
            integration = await self.create_integration(
                state.tenant_id, provider_name, token, config_data
            )

        await self.log_integration_activity(
            integration.id, "oauth_complete", LogStatus.SUCCESS, {"provider": provider_name}
        )
        logger.info("OAuth completed for tenant %s with %s", state.tenant_id, provider_name)
        return integration

    async def _replace_credentials(
        self,
        integration: Integration,
        provider: IntegrationProvider,
        token: TokenData,
        config_data: Dict[str, Any],
    ) -> Integration:
        validated = self._validated_config(provider, config_data)
        encrypted = self._vault.encrypt_token_data(token)
        return await self._store.update_integration(
            integration.id,
            access_token=encrypted.encrypted_access_token,
            refresh_token=encrypted.encrypted_refresh_token,
            token_expires_at=encrypted.expires_at,
            scope=encrypted.scope,
            config=validated,
            is_active=True,
            last_sync_at=_now(),
        )

    # ── Integrations ────────────────────────────────────────────────────

    async def create_integration(
        self,
        tenant_id: str,
        provider_name: str,
        token: TokenData,
        config_data: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        provider = self.registry.get(provider_name)
        validated = self._validated_config(provider, config_data or {})
        encrypted = self._vault.encrypt_token_data(token)
        now = _now()
        return await self._store.create_integration(
            Integration(
                id=_new_id(),
                tenant_id=tenant_id,
                provider_name=provider_name,
                category=provider.category,
                access_token=encrypted.encrypted_access_token,
                refresh_token=encrypted.encrypted_refresh_token,
                token_expires_at=encrypted.expires_at,
                scope=encrypted.scope,
                config=validated,
                is_active=True,
                last_sync_at=now,
                created_at=now,
                updated_at=now,
            )
        )

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        return await self._store.get_integration(integration_id)

    async def list_tenant_integrations(
        self, tenant_id: str, category: Optional[ProviderCategory] = None
    ) -> List[Integration]:
        """Active integrations of a tenant, newest first."""
        integrations = await self._store.list_integrations(tenant_id, category)
        return [i for i in integrations if i.is_active]

    async def update_integration_config(
        self, integration_id: str, config_data: Dict[str, Any]
    ) -> Integration:
        integration = await self._require_integration(integration_id)
        provider = self.registry.get(integration.provider_name)

        async def credentials() -> ProviderCredentials:
            return await self._credentials(integration, provider)

        prepared = await provider.prepare_config(dict(config_data), credentials)
        validated = self._validated_config(provider, prepared)
        updated = await self._store.update_integration(integration_id, config=validated)
        await self.log_integration_activity(
            integration_id, "config_update", LogStatus.SUCCESS, {"config": validated}
        )
        return updated

    async def disconnect_integration(self, integration_id: str) -> None:
        """Revoke remotely (best effort), then delete the integration and its connections."""
        integration = await self._require_integration(integration_id)

        if self.registry.has(integration.provider_name):
            token = await self._tokens.get_token_data(integration_id)
            if token is not None:
                provider = self.registry.get(integration.provider_name)
                try:
                    await provider.revoke_token(token.access_token)
                except Exception:
                    logger.warning(
                        "Remote revocation failed for integration %s", integration_id, exc_info=True
                    )

        removed = await self._store.delete_connections_for_integration(integration_id)
        await self._store.delete_integration(integration_id)
        logger.info(
            "Disconnected %s integration %s (%d connections removed)",
            integration.provider_name,
            integration_id,
            removed,
        )

    async def refresh_integration_tokens(self, integration_id: str) -> Integration:
        integration = await self._require_integration(integration_id)
        if not integration.refresh_token:
            raise ReauthRequiredError("No refresh token available")
        provider = self.registry.get(integration.provider_name)
        await self._tokens.refresh(integration, provider)
        return await self._require_integration(integration_id)

    # ── Credentials ─────────────────────────────────────────────────────

    async def _credentials(
        self, integration: Integration, provider: IntegrationProvider
    ) -> ProviderCredentials:
        access_token = await self._tokens.get_valid_access_token(integration, provider)
        if access_token is None:
            raise ReauthRequiredError(
                f"{provider.display_name} integration {integration.id} needs to be reconnected"
            )

        async def renew() -> ProviderCredentials:
            refreshed = await self.refresh_integration_tokens(integration.id)
            token = await self._tokens.get_token_data(integration.id)
            if token is None:
                raise ReauthRequiredError(f"Integration {integration.id} lost its credentials")
            return ProviderCredentials(integration=refreshed, access_token=token.access_token)

        return ProviderCredentials(
            integration=integration,
            access_token=access_token,
            renew=renew if integration.refresh_token else None,
        )

    # ── Connections ─────────────────────────────────────────────────────

    async def get_available_channels(self, integration_id: str) -> List[Channel]:
        integration = await self._require_active_integration(integration_id)
        provider = self.registry.get(integration.provider_name)
        try:
            credentials = await self._credentials(integration, provider)
            channels = await provider.get_available_channels(credentials)
        except Exception as exc:
            await self.log_integration_activity(
                integration_id, "fetch_channels", LogStatus.ERROR, error_message=str(exc)
            )
            raise
        await self.log_integration_activity(
            integration_id, "fetch_channels", LogStatus.SUCCESS, {"channel_count": len(channels)}
        )
        return channels

    async def connect_record_to_channel(self, params: ConnectRecordParams) -> Connection:
        integration = await self._require_active_integration(params.integration_id)

        record = await self._records.get_record(params.record_id)
        if record is None:
            raise RecordNotFoundError(f"Record '{params.record_id}' not found")
        if record.tenant_id != integration.tenant_id:
            raise ValidationError("Record and integration must belong to the same tenant")

        existing = await self._store.list_connections(
            record_id=params.record_id, integration_id=params.integration_id
        )
        if any(c.external_id == params.external_id for c in existing):
            raise DuplicateConnectionError("Record is already connected to this channel")

        provider = self.registry.get(integration.provider_name)
        credentials = await self._credentials(integration, provider)
        channels = await provider.get_available_channels(credentials)
        channel = next((c for c in channels if c.id == params.external_id), None)
        if channel is None:
            raise ChannelNotFoundError(params.external_id)

        conn_config = self._validated_connection_config(
            provider,
            {
                **params.config,
                "channel_name": channel.name,
                "channel_kind": channel.kind,
                "channel_metadata": channel.metadata,
            },
        )
        now = _now()
        connection = await self._store.create_connection(
            Connection(
                id=_new_id(),
                record_id=params.record_id,
                integration_id=params.integration_id,
                external_id=params.external_id,
                config=conn_config,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
        )
        await self.log_integration_activity(
            params.integration_id,
            "connection_create",
            LogStatus.SUCCESS,
            {
                "record_id": params.record_id,
                "channel_id": params.external_id,
                "channel_name": channel.name,
            },
        )
        return connection

    async def disconnect_record_from_channel(self, connection_id: str) -> None:
        connection = await self._store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        await self._store.delete_connection(connection_id)
        await self.log_integration_activity(
            connection.integration_id,
            "connection_delete",
            LogStatus.SUCCESS,
            {"record_id": connection.record_id, "channel_id": connection.external_id},
        )

    async def get_record_connections(self, record_id: str) -> List[Connection]:
        return await self._store.list_connections(record_id=record_id, active_only=True)

    async def get_integration_connections(self, integration_id: str) -> List[Connection]:
        return await self._store.list_connections(integration_id=integration_id, active_only=True)

    async def validate_integration_connections(
        self, integration_id: str
    ) -> ConnectionValidationSummary:
        """Re-check every connection of the integration and flip ``is_active`` to match."""
        integration = await self._require_integration(integration_id)
        connections = await self._store.list_connections(integration_id=integration_id)
        if not connections:
            return ConnectionValidationSummary(errors=["No connections found"])

        provider = self.registry.get(integration.provider_name)
        try:
            credentials = await self._credentials(integration, provider)
        except IntegrationError as exc:
            summary = ConnectionValidationSummary(invalid=len(connections), errors=[str(exc)])
            await self.log_integration_activity(
                integration_id,
                "validate_connections",
                LogStatus.ERROR,
                {"valid": 0, "invalid": summary.invalid, "total_connections": len(connections)},
                error_message=str(exc),
            )
            return summary

        summary = ConnectionValidationSummary()
        for connection in connections:
            ok = await provider.validate_connection(ConnectionTarget(connection, credentials))
            if ok:
                summary.valid += 1
            else:
                summary.invalid += 1
                summary.errors.append(f"Connection {connection.id} is invalid")
            if ok != connection.is_active:
                await self._store.update_connection(connection.id, is_active=ok)

        await self.log_integration_activity(
            integration_id,
            "validate_connections",
            LogStatus.ERROR if summary.errors else LogStatus.SUCCESS,
            {
                "valid": summary.valid,
                "invalid": summary.invalid,
                "total_connections": len(connections),
            },
        )
        return summary

    # ── Fan-out ─────────────────────────────────────────────────────────

    def _record_url(self, record: RecordSnapshot) -> str:
        if record.url:
            return record.url
        return f"{self._settings.app_base_url.rstrip('/')}/records/{record.id}"

    async def handle_record_change(
        self, record_id: str, change_kind: ChangeKind, actor_id: str
    ) -> FanOutResult:
        """
        Post a change notice to every active connection of ``record_id``.

        Returns a per-connection tally; individual delivery failures are
        logged and counted, never raised.
        """
        connections = await self._store.list_connections(record_id=record_id, active_only=True)
        if not connections:
            return FanOutResult()

        record = await self._records.get_record(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record '{record_id}' not found")
        actor = await self._records.get_actor(actor_id)

        message = MessageData(
            title=record.title,
            content=truncate_text(record.content or "", self._settings.message_content_max_length),
            author=actor.display_name if actor else "Unknown user",
            record_url=self._record_url(record),
            change_kind=change_kind,
        )

        # One lookup per integration, shared by its connections.
        lookups: Dict[str, "asyncio.Future[Optional[Integration]]"] = {}

        def _integration(integration_id: str) -> "asyncio.Future[Optional[Integration]]":
            lookup = lookups.get(integration_id)
            if lookup is None:
                lookup = asyncio.ensure_future(self._store.get_integration(integration_id))
                lookups[integration_id] = lookup
            return lookup

        semaphore = asyncio.Semaphore(max(1, self._settings.fanout_max_concurrency))

        async def _deliver(connection: Connection) -> Optional[str]:
            async with semaphore:
                try:
                    integration = await _integration(connection.integration_id)
                    await self._post_to_connection(connection, integration, message)
                except Exception as exc:
                    logger.warning(
                        "Posting record %s to connection %s failed: %s",
                        record_id,
                        connection.id,
                        exc,
                    )
                    await self.log_integration_activity(
                        connection.integration_id,
                        "post_message",
                        LogStatus.ERROR,
                        {
                            "record_id": record_id,
                            "channel_id": connection.external_id,
                            "change_kind": change_kind.value,
                        },
                        error_message=str(exc),
                    )
                    return f"Connection {connection.id}: {exc}"
                return None

        outcomes = await asyncio.gather(*(_deliver(c) for c in connections))
        errors = [o for o in outcomes if o is not None]
        result = FanOutResult(
            connections=len(connections),
            succeeded=len(connections) - len(errors),
            failed=len(errors),
            errors=errors,
        )
        logger.info(
            "Record %s %s: %d/%d connections notified",
            record_id,
            change_kind.value,
            result.succeeded,
            result.connections,
        )
        return result

    async def _post_to_connection(
        self,
        connection: Connection,
        integration: Optional[Integration],
        message: MessageData,
    ) -> None:
        if integration is None:
            raise IntegrationNotFoundError(connection.integration_id)
        if not integration.is_active:
            raise ValidationError(f"Integration '{integration.id}' is inactive")

        provider = self.registry.get(integration.provider_name)
        credentials = await self._credentials(integration, provider)
        await provider.post_message(ConnectionTarget(connection, credentials), message)

        await self._store.update_connection(connection.id, last_posted_at=_now())
        await self.log_integration_activity(
            connection.integration_id,
            "post_message",
            LogStatus.SUCCESS,
            {
                "record_id": connection.record_id,
                "channel_id": connection.external_id,
                "change_kind": message.change_kind.value,
            },
        )

    # ── Reporting ───────────────────────────────────────────────────────

    async def get_integration_status(self, integration_id: str) -> IntegrationStatusReport:
        integration = await self._require_integration(integration_id)
        since = _now() - timedelta(hours=self._settings.status_error_window_hours)

        error_count = await self._store.count_logs(
            integration_id, since=since, status=LogStatus.ERROR
        )
        recent_errors = await self._store.list_logs(
            integration_id, since=since, status=LogStatus.ERROR, limit=_RECENT_ERRORS_LIMIT
        )
        connections = await self._store.list_connections(integration_id=integration_id)

        if not integration.is_active:
            status = IntegrationStatus.INACTIVE
        elif error_count > self._settings.status_error_threshold:
            status = IntegrationStatus.ERROR
        elif integration.token_expires_at and integration.token_expires_at < _now():
            status = IntegrationStatus.EXPIRED
        else:
            status = IntegrationStatus.ACTIVE

        return IntegrationStatusReport(
            status=status,
            last_sync=integration.last_sync_at,
            connection_count=len(connections),
            recent_errors=recent_errors,
        )

    async def get_integration_stats(self, integration_id: str) -> IntegrationStats:
        await self._require_integration(integration_id)
        now = _now()
        connections = await self._store.list_connections(integration_id=integration_id)
        latest = await self._store.list_logs(integration_id, limit=1)
        return IntegrationStats(
            total_connections=len(connections),
            active_connections=sum(1 for c in connections if c.is_active),
            recent_activity=await self._store.count_logs(integration_id, since=now - _ACTIVITY_WINDOW),
            last_activity=latest[0].timestamp if latest else None,
            error_count=await self._store.count_logs(
                integration_id,
                since=now - timedelta(hours=self._settings.status_error_window_hours),
                status=LogStatus.ERROR,
            ),
        )

    async def log_integration_activity(
        self,
        integration_id: str,
        action: str,
        status: LogStatus,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Append an audit entry. Logging failures are reported, never raised."""
        try:
            await self._store.append_log(
                integration_id,
                IntegrationLogEntry(
                    action=action,
                    status=status,
                    request_data=request_data,
                    response_data=response_data,
                    error_message=error_message,
                ),
            )
        except Exception:
            logger.warning(
                "Could not write %s log for integration %s", action, integration_id, exc_info=True
            )
