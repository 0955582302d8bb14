"""
NotionProvider — public OAuth integration for Notion workspaces.

Databases shared with the integration are exposed as channels; every
record change becomes a page in the connected database.  Notion access
tokens do not expire and there is no refresh grant.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.errors import (
    ConfigurationError,
    OAuthCallbackError,
    UnsupportedOperationError,
)
from connectors.schemas import (
    Channel,
    ChannelKind,
    MessageData,
    NotionConfig,
    NotionConnectionConfig,
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

_NOTION_API = "https://api.notion.com/v1"
_NOTION_VERSION = "2022-06-28"

_TITLE_MAX_LENGTH = 200
# Notion rejects rich text objects longer than this.
_RICH_TEXT_MAX_LENGTH = 2000
_SEARCH_PAGE_SIZE = 100
_MAX_PAGES = 10


def _plain_title(title: List[Dict[str, Any]]) -> str:
    return "".join(part.get("plain_text", "") for part in title or [])


def _text(content: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": truncate_text(content, _RICH_TEXT_MAX_LENGTH)}}]


def _paragraph(content: str) -> Dict[str, Any]:
    return {"object": "block", "type": "paragraph", "paragraph": {"rich_text": _text(content)}}


def _property_value(value: Any) -> Optional[Dict[str, Any]]:
    """Map a plain default value onto a Notion property payload."""
    if isinstance(value, bool):
        return {"checkbox": value}
    if isinstance(value, (int, float)):
        return {"number": value}
    if isinstance(value, str):
        return {"rich_text": _text(value)}
    return None


class NotionProvider(IntegrationProvider):
    """OAuth2 provider for Notion."""

    config_model = NotionConfig
    connection_config_model = NotionConnectionConfig

    @property
    def name(self) -> str:
        return "notion"

    @property
    def display_name(self) -> str:
        return "Notion"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.DOCS

    @property
    def description(self) -> str:
        return "Add record changes as pages in Notion databases"

    @property
    def icon(self) -> str:
        return "📓"

    def is_configured(self) -> bool:
        return bool(self.settings.notion_client_id and self.settings.notion_client_secret)

    def _api_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Notion-Version": _NOTION_VERSION,
        }

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def get_auth_url(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not self.is_configured():
            raise ConfigurationError("NOTION_CLIENT_ID and NOTION_CLIENT_SECRET are required")
        params = {
            "client_id": self.settings.notion_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "owner": "user",
            "state": self.resolve_state(tenant_id, redirect_uri, extra),
        }
        return f"{_NOTION_API}/oauth/authorize?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        if not params.code:
            raise OAuthCallbackError("No authorization code received")
        redirect_uri = params.state_data.extra.get("redirect_uri") if params.state_data else None
        if not redirect_uri:
            raise OAuthCallbackError("Redirect URI missing from OAuth state")

        async with self.http_client() as client:
            resp = await client.post(
                f"{_NOTION_API}/oauth/token",
                auth=(self.settings.notion_client_id, self.settings.notion_client_secret),
                json={
                    "grant_type": "authorization_code",
                    "code": params.code,
                    "redirect_uri": redirect_uri,
                },
            )
            raise_for_provider_status(resp, "Notion")
            data = resp.json()

        if not data.get("access_token"):
            raise OAuthCallbackError("Notion did not return an access token")

        owner_user = (data.get("owner") or {}).get("user") or {}
        metadata: Dict[str, Any] = {
            "workspace_id": data.get("workspace_id", ""),
            "workspace_name": data.get("workspace_name") or "",
            "bot_id": data.get("bot_id", ""),
        }
        if owner_user.get("id"):
            metadata["user"] = {
                "id": owner_user["id"],
                "name": owner_user.get("name"),
                "email": (owner_user.get("person") or {}).get("email"),
                "avatar_url": owner_user.get("avatar_url"),
            }

        return TokenData(access_token=data["access_token"], metadata=metadata)

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise UnsupportedOperationError("Notion tokens do not expire and cannot be refreshed")

    # ── Channels & messages ─────────────────────────────────────────────

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        async def _fetch(creds: ProviderCredentials) -> List[Dict[str, Any]]:
            databases: List[Dict[str, Any]] = []
            body: Dict[str, Any] = {
                "filter": {"value": "database", "property": "object"},
                "sort": {"direction": "descending", "timestamp": "last_edited_time"},
                "page_size": _SEARCH_PAGE_SIZE,
            }
            async with self.http_client() as client:
                for _ in range(_MAX_PAGES):
                    resp = await client.post(
                        f"{_NOTION_API}/search",
                        json=body,
                        headers=self._api_headers(creds.access_token),
                    )
                    raise_for_provider_status(resp, "Notion")
                    data = resp.json()
                    databases.extend(data.get("results", []))
                    if not data.get("has_more") or not data.get("next_cursor"):
                        break
                    body = {**body, "start_cursor": data["next_cursor"]}
            return databases

        databases = await call_with_renewal(credentials, _fetch)
        return [
            Channel(
                id=db["id"],
                name=_plain_title(db.get("title")) or "Untitled Database",
                kind=ChannelKind.PUBLIC,
                metadata={
                    "url": db.get("url"),
                    "icon": db.get("icon"),
                    "last_edited_time": db.get("last_edited_time"),
                },
            )
            for db in databases
            if not db.get("archived")
        ]

    def _page_payload(
        self, database_id: str, conn_config: NotionConnectionConfig, message: MessageData
    ) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            conn_config.title_property: {
                "title": _text(format_task_title(message, _TITLE_MAX_LENGTH))
            }
        }
        for prop, value in conn_config.default_properties.items():
            payload = _property_value(value)
            if payload is None:
                logger.debug("Skipping Notion default property %s with unsupported value", prop)
                continue
            properties[prop] = payload

        children: List[Dict[str, Any]] = []
        if conn_config.include_record_content and message.content:
            children.extend(
                _paragraph(chunk) for chunk in message.content.split("\n\n") if chunk.strip()
            )
            children.append({"object": "block", "type": "divider", "divider": {}})
        children.append(_paragraph(f"Created by: {message.author}"))
        children.append(
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {
                    "rich_text": [
                        {
                            "type": "text",
                            "text": {"content": "View record", "link": {"url": message.record_url}},
                        }
                    ]
                },
            }
        )

        return {
            "parent": {"database_id": database_id},
            "properties": properties,
            "children": children,
        }

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        conn_config = target.connection.typed_config(NotionConnectionConfig)
        page = self._page_payload(target.connection.external_id, conn_config, message)

        async def _create(creds: ProviderCredentials) -> Dict[str, Any]:
            async with self.http_client() as client:
                resp = await client.post(
                    f"{_NOTION_API}/pages",
                    json=page,
                    headers=self._api_headers(creds.access_token),
                )
                raise_for_provider_status(resp, "Notion")
                return resp.json()

        created = await call_with_renewal(target.credentials, _create)
        logger.debug(
            "Created Notion page %s in database %s", created.get("id"), target.connection.external_id
        )

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        try:
            async with self.http_client() as client:
                resp = await client.get(
                    f"{_NOTION_API}/databases/{target.connection.external_id}",
                    headers=self._api_headers(target.credentials.access_token),
                )
            return resp.is_success and not resp.json().get("archived", False)
        except Exception:
            logger.warning("Notion connection validation failed", exc_info=True)
            return False
