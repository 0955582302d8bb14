"""
JiraProvider — Atlassian OAuth2 (3LO) for Jira Cloud.

Projects are exposed as channels (keyed by project key) and every record
change becomes an issue.  Atlassian access tokens live for one hour; the
``offline_access`` scope yields a rotating refresh token.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.errors import (
    ConfigurationError,
    OAuthCallbackError,
    ProviderAPIError,
)
from connectors.schemas import (
    Channel,
    ChangeKind,
    ChannelKind,
    JiraConfig,
    JiraConnectionConfig,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    TokenData,
)
from connectors.utils import call_with_renewal, raise_for_provider_status, truncate_text

logger = logging.getLogger(__name__)

# Atlassian OAuth2 endpoints
_ATLASSIAN_AUTH_URL = "https://auth.atlassian.com/authorize"
_ATLASSIAN_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
_ATLASSIAN_API = "https://api.atlassian.com"

_SCOPES = ["read:jira-work", "write:jira-work", "manage:jira-project", "read:me", "offline_access"]
_SUMMARY_MAX_LENGTH = 255


def _expires_at(expires_in: Optional[int]) -> Optional[datetime]:
    if not expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class JiraProvider(IntegrationProvider):
    """OAuth2 provider for Jira Cloud."""

    config_model = JiraConfig
    connection_config_model = JiraConnectionConfig

    @property
    def name(self) -> str:
        return "jira"

    @property
    def display_name(self) -> str:
        return "Jira"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.TICKETING

    @property
    def description(self) -> str:
        return "Connect records to Jira projects for issue tracking and project management"

    @property
    def icon(self) -> str:
        return "🎫"

    def is_configured(self) -> bool:
        return bool(self.settings.jira_client_id and self.settings.jira_client_secret)

    def _require_credentials(self) -> None:
        if not self.is_configured():
            raise ConfigurationError(
                "JIRA_CLIENT_ID and JIRA_CLIENT_SECRET environment variables are required"
            )

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def get_auth_url(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._require_credentials()
        params = {
            "audience": "api.atlassian.com",
            "client_id": self.settings.jira_client_id,
            "scope": " ".join(_SCOPES),
            "redirect_uri": redirect_uri,
            "state": self.resolve_state(tenant_id, redirect_uri, extra),
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{_ATLASSIAN_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        """Exchange the code, then look up the user and the Jira site."""
        self._require_credentials()
        if not params.code:
            raise OAuthCallbackError("No authorization code received")
        redirect_uri = params.state_data.extra.get("redirect_uri") if params.state_data else None
        if not redirect_uri:
            raise OAuthCallbackError("Invalid OAuth state: missing redirect URI")

        async with self.http_client() as client:
            resp = await client.post(
                _ATLASSIAN_TOKEN_URL,
                json={
                    "grant_type": "authorization_code",
                    "client_id": self.settings.jira_client_id,
                    "client_secret": self.settings.jira_client_secret,
                    "code": params.code,
                    "redirect_uri": redirect_uri,
                },
                headers={"Accept": "application/json"},
            )
            raise_for_provider_status(resp, "Jira")
            token_data = resp.json()
            if not token_data.get("access_token"):
                raise OAuthCallbackError("No access token received from Jira")

            headers = self._auth_headers(token_data["access_token"])
            me_resp, resources_resp = await asyncio.gather(
                client.get(f"{_ATLASSIAN_API}/me", headers=headers),
                client.get(f"{_ATLASSIAN_API}/oauth/token/accessible-resources", headers=headers),
            )
            raise_for_provider_status(me_resp, "Jira")
            raise_for_provider_status(resources_resp, "Jira")
            me = me_resp.json()
            resources = resources_resp.json()

        if not resources:
            raise OAuthCallbackError("No accessible Jira sites for this account")
        site = resources[0]
        logger.info("Jira site authorized: %s", site.get("url"))

        return TokenData(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=_expires_at(token_data.get("expires_in")),
            scope=token_data.get("scope"),
            metadata={
                "instance_url": site.get("url"),
                "cloud_id": site.get("id"),
                "user": {
                    "account_id": me.get("account_id"),
                    "display_name": me.get("name") or me.get("nickname") or "",
                    "email_address": me.get("email"),
                },
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        self._require_credentials()
        async with self.http_client() as client:
            resp = await client.post(
                _ATLASSIAN_TOKEN_URL,
                json={
                    "grant_type": "refresh_token",
                    "client_id": self.settings.jira_client_id,
                    "client_secret": self.settings.jira_client_secret,
                    "refresh_token": refresh_token,
                },
                headers={"Accept": "application/json"},
            )
            raise_for_provider_status(resp, "Jira")
            data = resp.json()

        if "error" in data:
            raise ProviderAPIError(
                f"Jira token refresh error: {data.get('error_description', data['error'])}",
                error_code=data["error"],
            )
        return TokenData(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_expires_at(data.get("expires_in")),
            scope=data.get("scope"),
        )

    # ── Channels & messages ─────────────────────────────────────────────

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        async def _fetch(creds: ProviderCredentials) -> List[Dict[str, Any]]:
            cloud_id = self._cloud_id(creds)
            async with self.http_client() as client:
                resp = await client.get(
                    f"{_ATLASSIAN_API}/ex/jira/{cloud_id}/rest/api/3/project/search",
                    params={"expand": "lead,description"},
                    headers=self._auth_headers(creds.access_token),
                )
                raise_for_provider_status(resp, "Jira")
                return resp.json().get("values", [])

        projects = await call_with_renewal(credentials, _fetch)
        return [
            Channel(
                id=p["key"],
                name=f"{p['key']} - {p['name']}",
                kind=ChannelKind.PUBLIC,
                metadata={
                    "project_id": p.get("id"),
                    "project_key": p["key"],
                    "project_name": p["name"],
                    "project_type": p.get("projectTypeKey"),
                    "description": p.get("description"),
                },
            )
            for p in projects
        ]

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        project_key = target.connection.external_id

        async def _create(creds: ProviderCredentials) -> Dict[str, Any]:
            issue = await self._build_issue(creds, target, message)
            async with self.http_client() as client:
                resp = await client.post(
                    f"{_ATLASSIAN_API}/ex/jira/{self._cloud_id(creds)}/rest/api/3/issue",
                    json=issue,
                    headers=self._auth_headers(creds.access_token),
                )
                raise_for_provider_status(resp, "Jira")
                return resp.json()

        created = await call_with_renewal(target.credentials, _create)
        logger.debug("Created Jira issue %s in %s", created.get("key"), project_key)

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        try:
            cloud_id = self._cloud_id(target.credentials)
            async with self.http_client() as client:
                resp = await client.get(
                    f"{_ATLASSIAN_API}/ex/jira/{cloud_id}/rest/api/3/project/"
                    f"{target.connection.external_id}",
                    headers=self._auth_headers(target.credentials.access_token),
                )
            return resp.is_success
        except Exception:
            logger.warning("Jira connection validation failed", exc_info=True)
            return False

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    @staticmethod
    def _cloud_id(credentials: ProviderCredentials) -> str:
        cloud_id = credentials.integration.config.get("cloud_id")
        if not cloud_id:
            raise ConfigurationError("Jira cloud id is missing from the integration config")
        return cloud_id

    async def _pick_issue_type(
        self, creds: ProviderCredentials, project_key: str, preferred: str
    ) -> str:
        """Preferred issue type if the project has it, else its first non-subtask type."""
        async with self.http_client() as client:
            resp = await client.get(
                f"{_ATLASSIAN_API}/ex/jira/{self._cloud_id(creds)}/rest/api/3/issue/createmeta",
                params={"projectKeys": project_key, "expand": "projects.issuetypes"},
                headers=self._auth_headers(creds.access_token),
            )
        if not resp.is_success:
            return preferred
        projects = resp.json().get("projects") or []
        types = [t for t in (projects[0].get("issuetypes") or [] if projects else []) if not t.get("subtask")]
        for issue_type in types:
            if issue_type.get("name", "").lower() == preferred.lower():
                return issue_type["name"]
        return types[0]["name"] if types else preferred

    async def _build_issue(
        self,
        creds: ProviderCredentials,
        target: ConnectionTarget,
        message: MessageData,
    ) -> Dict[str, Any]:
        site = target.integration.typed_config(JiraConfig)
        conn = target.connection.typed_config(JiraConnectionConfig)
        project_key = target.connection.external_id

        include_content = (
            conn.include_record_content
            if conn.include_record_content is not None
            else site.include_record_content
        )
        issue_type = await self._pick_issue_type(
            creds, project_key, conn.default_issue_type or site.default_issue_type
        )

        summary = message.title
        if message.change_kind != ChangeKind.CREATED:
            summary = f"[{message.change_kind.value.upper()}] {summary}"

        description = f"Record {message.change_kind.value} by {message.author}"
        if message.record_url:
            description += f"\n\n[View Record|{message.record_url}]"
        if include_content and message.content:
            description += f"\n\n---\n\n{message.content}"

        fields: Dict[str, Any] = {
            "project": {"key": project_key},
            "summary": truncate_text(summary, _SUMMARY_MAX_LENGTH),
            "description": {
                "type": "doc",
                "version": 1,
                "content": [
                    {"type": "paragraph", "content": [{"type": "text", "text": description}]}
                ],
            },
            "issuetype": {"name": issue_type},
        }
        reporter = conn.reporter_account_id or (
            site.bot_user.account_id if site.use_bot_user and site.bot_user else None
        )
        if reporter:
            fields["reporter"] = {"id": reporter}
        return {"fields": fields}

    async def configure_bot_user(self, credentials: ProviderCredentials, account_id: str) -> Dict[str, Any]:
        """Look up a Jira user to act as reporter for created issues."""
        cloud_id = self._cloud_id(credentials)
        async with self.http_client() as client:
            resp = await client.get(
                f"{_ATLASSIAN_API}/ex/jira/{cloud_id}/rest/api/3/user",
                params={"accountId": account_id},
                headers=self._auth_headers(credentials.access_token),
            )
            raise_for_provider_status(resp, "Jira")
            user = resp.json()
        if not user.get("accountId"):
            raise ProviderAPIError("Jira did not return a usable bot user")
        return {
            "account_id": user["accountId"],
            "display_name": user.get("displayName", ""),
            "email_address": user.get("emailAddress"),
        }

    async def prepare_config(
        self,
        config_data: Dict[str, Any],
        credentials: Callable[[], Awaitable[ProviderCredentials]],
    ) -> Dict[str, Any]:
        """Resolve ``bot_user.account_id`` into the stored bot profile."""
        bot_user = config_data.get("bot_user") or {}
        account_id = bot_user.get("account_id")
        if not config_data.get("use_bot_user") or not account_id:
            return config_data
        resolved = await self.configure_bot_user(await credentials(), account_id)
        logger.info("Jira bot user set to %s", resolved["display_name"] or account_id)
        return {**config_data, "bot_user": resolved}
