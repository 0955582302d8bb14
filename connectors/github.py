"""
GitHubProvider — OAuth2 for GitHub repositories.

Uses the GitHub App OAuth flow to get per-tenant tokens with auto-refresh.
Repositories the user can push to are exposed as channels; record changes
become issues in the connected repository.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.errors import ConfigurationError, OAuthCallbackError, ProviderAPIError
from connectors.schemas import (
    Channel,
    ChannelKind,
    GitHubConfig,
    GitHubConnectionConfig,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    TokenData,
)
from connectors.utils import call_with_renewal, format_task_title, raise_for_provider_status

logger = logging.getLogger(__name__)

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"

_SCOPES = ["repo", "read:user", "user:email"]
_PER_PAGE = 100
_MAX_PAGES = 10
_TITLE_MAX_LENGTH = 256


def _expires_at(expires_in: Optional[int]) -> Optional[datetime]:
    # Classic OAuth app tokens carry no expiry.
    if not expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class GitHubProvider(IntegrationProvider):
    """OAuth2 provider for GitHub."""

    config_model = GitHubConfig
    connection_config_model = GitHubConnectionConfig

    @property
    def name(self) -> str:
        return "github"

    @property
    def display_name(self) -> str:
        return "GitHub"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.TICKETING

    @property
    def description(self) -> str:
        return "Connect records to GitHub repositories as issues"

    @property
    def icon(self) -> str:
        return "🐙"

    def is_configured(self) -> bool:
        return bool(self.settings.github_client_id and self.settings.github_client_secret)

    def _api_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def get_auth_url(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not self.is_configured():
            raise ConfigurationError("GITHUB_CLIENT_ID and GITHUB_CLIENT_SECRET are required")
        params = {
            "client_id": self.settings.github_client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(_SCOPES),
            "state": self.resolve_state(tenant_id, redirect_uri, extra),
        }
        return f"{_GH_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        """Exchange auth code for tokens and fetch user profile."""
        if not params.code:
            raise OAuthCallbackError("No authorization code received")
        redirect_uri = params.state_data.extra.get("redirect_uri") if params.state_data else None

        async with self.http_client() as client:
            # 1. Exchange code for token
            form = {
                "client_id": self.settings.github_client_id,
                "client_secret": self.settings.github_client_secret,
                "code": params.code,
            }
            if redirect_uri:
                form["redirect_uri"] = redirect_uri
            token_resp = await client.post(
                _GH_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
            raise_for_provider_status(token_resp, "GitHub")
            token_data = token_resp.json()

            if "error" in token_data:
                raise OAuthCallbackError(
                    f"GitHub OAuth error: {token_data.get('error_description', token_data['error'])}"
                )

            # 2. Fetch user profile
            user_resp = await client.get(
                f"{_GH_API}/user", headers=self._api_headers(token_data["access_token"])
            )
            raise_for_provider_status(user_resp, "GitHub")
            user = user_resp.json()

        return TokenData(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=_expires_at(token_data.get("expires_in")),
            scope=token_data.get("scope"),
            metadata={
                "user": {
                    "id": user.get("id"),
                    "login": user.get("login"),
                    "name": user.get("name"),
                    "email": user.get("email"),
                    "avatar_url": user.get("avatar_url"),
                },
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        """
        Refresh the access token using a GitHub App refresh token.

        Note: Only GitHub Apps with "Expire user authorization tokens"
        enabled provide refresh tokens. Classic OAuth tokens don't expire.
        """
        async with self.http_client() as client:
            resp = await client.post(
                _GH_TOKEN_URL,
                data={
                    "client_id": self.settings.github_client_id,
                    "client_secret": self.settings.github_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
            raise_for_provider_status(resp, "GitHub")
            data = resp.json()

        # GitHub reports refresh failures (bad_refresh_token, …) with HTTP 200.
        if "error" in data:
            raise ProviderAPIError(
                f"GitHub token refresh error: {data.get('error_description', data['error'])}",
                error_code=data["error"],
            )

        return TokenData(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_expires_at(data.get("expires_in")),
            scope=data.get("scope"),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token via GitHub's OAuth application API."""
        try:
            async with self.http_client() as client:
                resp = await client.request(
                    "DELETE",
                    f"{_GH_API}/applications/{self.settings.github_client_id}/token",
                    auth=(self.settings.github_client_id, self.settings.github_client_secret),
                    json={"access_token": access_token},
                )
                return resp.status_code == 204
        except Exception:
            logger.warning("GitHub token revocation failed", exc_info=True)
            return False

    # ── Channels & messages ─────────────────────────────────────────────

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        async def _fetch(creds: ProviderCredentials) -> List[Dict[str, Any]]:
            repos: List[Dict[str, Any]] = []
            async with self.http_client() as client:
                for page in range(1, _MAX_PAGES + 1):
                    resp = await client.get(
                        f"{_GH_API}/user/repos",
                        params={
                            "page": page,
                            "per_page": _PER_PAGE,
                            "sort": "updated",
                            "affiliation": "owner,collaborator,organization_member",
                        },
                        headers=self._api_headers(creds.access_token),
                    )
                    raise_for_provider_status(resp, "GitHub")
                    batch = resp.json()
                    repos.extend(batch)
                    if len(batch) < _PER_PAGE:
                        break
            return repos

        repos = await call_with_renewal(credentials, _fetch)
        return [
            Channel(
                id=r["full_name"],
                name=r["full_name"],
                kind=ChannelKind.PRIVATE if r.get("private") else ChannelKind.PUBLIC,
                metadata={
                    "repository_id": r.get("id"),
                    "html_url": r.get("html_url"),
                    "description": r.get("description"),
                    "has_issues": r.get("has_issues", True),
                },
            )
            for r in repos
            if not r.get("archived")
            and not r.get("disabled")
            and (r.get("permissions") or {}).get("push")
        ]

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        conn_config = target.connection.typed_config(GitHubConnectionConfig)
        repository = target.connection.external_id

        body = f"**Author:** {message.author}\n\n"
        if conn_config.include_record_content and message.content:
            body += f"**Content:**\n{message.content}\n\n"
        body += f"**Source:** [View Record]({message.record_url})\n"
        body += f"**Change Type:** {message.change_kind.value}\n"

        issue: Dict[str, Any] = {
            "title": format_task_title(message, _TITLE_MAX_LENGTH - 2),
            "body": body,
        }
        if conn_config.default_labels:
            issue["labels"] = conn_config.default_labels
        if conn_config.default_assignees:
            issue["assignees"] = conn_config.default_assignees
        if conn_config.default_milestone is not None:
            issue["milestone"] = conn_config.default_milestone

        async def _create(creds: ProviderCredentials) -> Dict[str, Any]:
            async with self.http_client() as client:
                resp = await client.post(
                    f"{_GH_API}/repos/{repository}/issues",
                    json=issue,
                    headers=self._api_headers(creds.access_token),
                )
                raise_for_provider_status(resp, "GitHub")
                return resp.json()

        created = await call_with_renewal(target.credentials, _create)
        logger.debug("Created GitHub issue #%s in %s", created.get("number"), repository)

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        try:
            async with self.http_client() as client:
                resp = await client.get(
                    f"{_GH_API}/repos/{target.connection.external_id}",
                    headers=self._api_headers(target.credentials.access_token),
                )
            if not resp.is_success:
                return False
            repo = resp.json()
            return bool((repo.get("permissions") or {}).get("push")) and not repo.get("archived")
        except Exception:
            logger.warning("GitHub connection validation failed", exc_info=True)
            return False
