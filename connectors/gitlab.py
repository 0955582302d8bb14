"""
GitLabProvider — OAuth2 for gitlab.com and self-managed GitLab.

The instance is chosen when the flow starts (``extra["instance_url"]``)
and kept in the integration config; authorization, token and API calls
all go to that instance.  Only instances listed in settings are accepted
since the client secret is sent to them.  Projects are exposed as
channels and record changes become issues.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.errors import ConfigurationError, OAuthCallbackError, ValidationError
from connectors.schemas import (
    Channel,
    ChannelKind,
    GitLabConfig,
    GitLabConnectionConfig,
    Integration,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    TokenData,
)
from connectors.utils import (
    call_with_renewal,
    format_task_title,
    raise_for_provider_status,
    truncate_text,
)

logger = logging.getLogger(__name__)

_SCOPES = ["api", "read_user", "read_repository", "write_repository"]
_PER_PAGE = 100
_MAX_PAGES = 10
_TITLE_MAX_LENGTH = 255
_DESCRIPTION_MAX_LENGTH = 50000
# Reporter and above may open issues.
_MIN_ACCESS_LEVEL = 20


def _expires_at(expires_in: Optional[int]) -> Optional[datetime]:
    if not expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class GitLabProvider(IntegrationProvider):
    """OAuth2 provider for GitLab."""

    config_model = GitLabConfig
    connection_config_model = GitLabConnectionConfig

    @property
    def name(self) -> str:
        return "gitlab"

    @property
    def display_name(self) -> str:
        return "GitLab"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.TICKETING

    @property
    def description(self) -> str:
        return "Connect records to GitLab projects as issues"

    @property
    def icon(self) -> str:
        return "🦊"

    def is_configured(self) -> bool:
        return bool(self.settings.gitlab_client_id and self.settings.gitlab_client_secret)

    # ── Instances ───────────────────────────────────────────────────────

    @property
    def allowed_instances(self) -> List[str]:
        urls = [self.settings.gitlab_default_instance_url, *self.settings.gitlab_instance_urls]
        return [u.rstrip("/") for u in urls if u]

    def instance_url(self, requested: Optional[str] = None) -> str:
        """Normalised instance base URL; raises for instances not in settings."""
        if not requested:
            return self.settings.gitlab_default_instance_url.rstrip("/")
        url = requested.strip().rstrip("/")
        if url not in self.allowed_instances:
            raise ValidationError(f"GitLab instance {requested} is not configured")
        return url

    def _integration_instance(self, integration: Integration) -> str:
        return self.instance_url(integration.config.get("instance_url"))

    def _api(self, credentials: ProviderCredentials) -> str:
        return f"{self._integration_instance(credentials.integration)}/api/v4"

    @staticmethod
    def _api_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def get_auth_url(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not self.is_configured():
            raise ConfigurationError("GITLAB_CLIENT_ID and GITLAB_CLIENT_SECRET are required")
        instance = self.instance_url((extra or {}).get("instance_url"))
        params = {
            "client_id": self.settings.gitlab_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(_SCOPES),
            "state": self.resolve_state(
                tenant_id, redirect_uri, {**(extra or {}), "instance_url": instance}
            ),
        }
        return f"{instance}/oauth/authorize?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        """Exchange the code at the flow's instance and fetch the user."""
        if not params.code:
            raise OAuthCallbackError("No authorization code received")
        extra = params.state_data.extra if params.state_data else {}
        redirect_uri = extra.get("redirect_uri")
        if not redirect_uri:
            raise OAuthCallbackError("Redirect URI missing from OAuth state")
        instance = self.instance_url(extra.get("instance_url"))

        async with self.http_client() as client:
            token_resp = await client.post(
                f"{instance}/oauth/token",
                json={
                    "client_id": self.settings.gitlab_client_id,
                    "client_secret": self.settings.gitlab_client_secret,
                    "code": params.code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                },
            )
            raise_for_provider_status(token_resp, "GitLab")
            token_data = token_resp.json()

            user_resp = await client.get(
                f"{instance}/api/v4/user",
                headers=self._api_headers(token_data["access_token"]),
            )
            raise_for_provider_status(user_resp, "GitLab")
            user = user_resp.json()

        return TokenData(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=_expires_at(token_data.get("expires_in")),
            scope=token_data.get("scope"),
            metadata={
                "instance_url": instance,
                "user": {
                    "id": user.get("id"),
                    "username": user.get("username"),
                    "name": user.get("name"),
                    "email": user.get("email"),
                    "avatar_url": user.get("avatar_url"),
                },
            },
        )

    async def _refresh_at(self, instance: str, refresh_token: str) -> TokenData:
        async with self.http_client() as client:
            resp = await client.post(
                f"{instance}/oauth/token",
                json={
                    "client_id": self.settings.gitlab_client_id,
                    "client_secret": self.settings.gitlab_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            raise_for_provider_status(resp, "GitLab")
            data = resp.json()

        return TokenData(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=_expires_at(data.get("expires_in")),
            scope=data.get("scope"),
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        return await self._refresh_at(self.instance_url(), refresh_token)

    async def refresh_integration_token(
        self, refresh_token: str, integration: Integration
    ) -> TokenData:
        return await self._refresh_at(self._integration_instance(integration), refresh_token)

    # ── Channels & messages ─────────────────────────────────────────────

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        async def _fetch(creds: ProviderCredentials) -> List[Dict[str, Any]]:
            projects: List[Dict[str, Any]] = []
            async with self.http_client() as client:
                for page in range(1, _MAX_PAGES + 1):
                    resp = await client.get(
                        f"{self._api(creds)}/projects",
                        params={
                            "membership": "true",
                            "min_access_level": _MIN_ACCESS_LEVEL,
                            "order_by": "last_activity_at",
                            "per_page": _PER_PAGE,
                            "page": page,
                        },
                        headers=self._api_headers(creds.access_token),
                    )
                    raise_for_provider_status(resp, "GitLab")
                    batch = resp.json()
                    projects.extend(batch)
                    if len(batch) < _PER_PAGE:
                        break
            return projects

        projects = await call_with_renewal(credentials, _fetch)
        return [
            Channel(
                id=str(p["id"]),
                name=p.get("name_with_namespace") or p.get("name", ""),
                kind=ChannelKind.PRIVATE if p.get("visibility") == "private" else ChannelKind.PUBLIC,
                metadata={
                    "path_with_namespace": p.get("path_with_namespace"),
                    "web_url": p.get("web_url"),
                    "default_branch": p.get("default_branch"),
                },
            )
            for p in projects
            if not p.get("archived") and p.get("issues_enabled", True)
        ]

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        conn_config = target.connection.typed_config(GitLabConnectionConfig)
        project_id = quote(target.connection.external_id, safe="")

        description = f"**Note by {message.author}**\n\n"
        if conn_config.include_record_content and message.content:
            description += f"{truncate_text(message.content, _DESCRIPTION_MAX_LENGTH)}\n\n"
        description += f"[View full note]({message.record_url})"

        issue: Dict[str, Any] = {
            "title": format_task_title(message, _TITLE_MAX_LENGTH - 2),
            "description": description,
        }
        if conn_config.default_labels:
            issue["labels"] = ",".join(conn_config.default_labels)
        if conn_config.default_milestone_id is not None:
            issue["milestone_id"] = conn_config.default_milestone_id
        if conn_config.default_assignee_id is not None:
            issue["assignee_ids"] = [conn_config.default_assignee_id]

        async def _create(creds: ProviderCredentials) -> Dict[str, Any]:
            async with self.http_client() as client:
                resp = await client.post(
                    f"{self._api(creds)}/projects/{project_id}/issues",
                    json=issue,
                    headers=self._api_headers(creds.access_token),
                )
                raise_for_provider_status(resp, "GitLab")
                return resp.json()

        created = await call_with_renewal(target.credentials, _create)
        logger.debug(
            "Created GitLab issue !%s in project %s", created.get("iid"), target.connection.external_id
        )

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        try:
            project_id = quote(target.connection.external_id, safe="")
            async with self.http_client() as client:
                resp = await client.get(
                    f"{self._api(target.credentials)}/projects/{project_id}",
                    headers=self._api_headers(target.credentials.access_token),
                )
            return resp.is_success and not resp.json().get("archived", False)
        except Exception:
            logger.warning("GitLab connection validation failed", exc_info=True)
            return False
