"""
SlackProvider — OAuth2 bot install, channels, chat.postMessage.

Slack bot tokens do not expire and cannot be refreshed.  Slack answers
HTTP 200 with ``{"ok": false, "error": ...}`` for most failures, so every
response body is checked as well as the status code.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.errors import (
    ConfigurationError,
    OAuthCallbackError,
    ProviderAPIError,
    RetryableProviderError,
    UnsupportedOperationError,
)
from connectors.schemas import (
    Channel,
    ChannelKind,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    SlackConfig,
    SlackConnectionConfig,
    TokenData,
)
from connectors.utils import change_emoji, is_valid_url, raise_for_provider_status, truncate_text

logger = logging.getLogger(__name__)

_SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
_SLACK_API = "https://slack.com/api"

_SCOPES = ["conversations:read", "chat:write"]
_PAGE_SIZE = 200
_MAX_CHANNELS = 1000

_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}

_FRIENDLY_ERRORS = {
    "channel_not_found": "Slack channel not found. The channel may have been deleted or renamed.",
    "not_in_channel": "Bot is not a member of this Slack channel. Please invite the bot to the channel.",
    "is_archived": "Cannot post to archived Slack channel.",
    "channel_is_archived": "Cannot post to archived Slack channel.",
    "msg_too_long": "Message is too long for Slack. Please shorten the record content.",
    "invalid_auth": "Slack authentication failed. Please reconnect your Slack integration.",
    "invalid_blocks": "Invalid Slack message format.",
}


def _raise_for_slack_error(data: Dict[str, Any], action: str) -> None:
    if data.get("ok"):
        return
    code = data.get("error") or "unknown_error"
    message = _FRIENDLY_ERRORS.get(code, f"Slack API error during {action}: {code}")
    if code in ("rate_limited", "ratelimited", "internal_error", "service_unavailable"):
        raise RetryableProviderError(message, status_code=429, error_code=code)
    raise ProviderAPIError(
        message,
        status_code=401 if code in _AUTH_ERRORS else None,
        error_code=code,
    )


class SlackProvider(IntegrationProvider):
    """OAuth2 provider for Slack workspaces."""

    config_model = SlackConfig
    connection_config_model = SlackConnectionConfig

    @property
    def name(self) -> str:
        return "slack"

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.COMMUNICATION

    @property
    def description(self) -> str:
        return "Connect records to Slack channels for team collaboration"

    @property
    def icon(self) -> str:
        return "💬"

    def is_configured(self) -> bool:
        return bool(self.settings.slack_client_id and self.settings.slack_client_secret)

    def _require_credentials(self) -> None:
        if not self.is_configured():
            raise ConfigurationError(
                "SLACK_CLIENT_ID and SLACK_CLIENT_SECRET environment variables are required"
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
            "client_id": self.settings.slack_client_id,
            "scope": ",".join(_SCOPES),
            "redirect_uri": redirect_uri,
            "state": self.resolve_state(tenant_id, redirect_uri, extra),
            "response_type": "code",
        }
        return f"{_SLACK_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        """Exchange the code at oauth.v2.access and capture the workspace."""
        self._require_credentials()
        if not params.code:
            raise OAuthCallbackError("No authorization code received")

        redirect_uri = (params.state_data.extra.get("redirect_uri") if params.state_data else None)
        form = {
            "client_id": self.settings.slack_client_id,
            "client_secret": self.settings.slack_client_secret,
            "code": params.code,
        }
        if redirect_uri:
            form["redirect_uri"] = redirect_uri

        async with self.http_client() as client:
            resp = await client.post(f"{_SLACK_API}/oauth.v2.access", data=form)
            raise_for_provider_status(resp, "Slack")
            data = resp.json()

        if not data.get("ok") or not data.get("access_token"):
            raise OAuthCallbackError(f"Slack OAuth error: {data.get('error', 'unknown_error')}")

        team = data.get("team") or {}
        logger.info("Slack workspace authorized: %s (%s)", team.get("name"), team.get("id"))
        return TokenData(
            access_token=data["access_token"],
            scope=data.get("scope"),
            metadata={
                "team_id": team.get("id"),
                "team_name": team.get("name"),
                "bot_user_id": data.get("bot_user_id"),
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise UnsupportedOperationError("Slack bot tokens do not require refresh")

    # ── Channels & messages ─────────────────────────────────────────────

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        raw: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        headers = {"Authorization": f"Bearer {credentials.access_token}"}

        async with self.http_client() as client:
            while True:
                query = {
                    "types": "public_channel,private_channel",
                    "exclude_archived": "true",
                    "limit": str(_PAGE_SIZE),
                }
                if cursor:
                    query["cursor"] = cursor
                resp = await client.get(
                    f"{_SLACK_API}/conversations.list", params=query, headers=headers
                )
                raise_for_provider_status(resp, "Slack")
                data = resp.json()
                _raise_for_slack_error(data, "conversations.list")

                raw.extend(data.get("channels") or [])
                cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
                if not cursor:
                    break
                if len(raw) >= _MAX_CHANNELS:
                    logger.warning("Reached channel limit of %d, stopping pagination", _MAX_CHANNELS)
                    break

        channels = [
            Channel(
                id=c["id"],
                name=c["name"],
                kind=ChannelKind.PRIVATE if c.get("is_private") else ChannelKind.PUBLIC,
                metadata={
                    "is_member": c.get("is_member", False),
                    "is_private": c.get("is_private", False),
                    "member_count": c.get("num_members", 0),
                    "purpose": (c.get("purpose") or {}).get("value", ""),
                    "topic": (c.get("topic") or {}).get("value", ""),
                    "bot_needs_invite": not c.get("is_member", False),
                },
            )
            for c in raw[:_MAX_CHANNELS]
            if not c.get("is_archived")
        ]
        channels.sort(key=lambda ch: ch.name)
        return channels

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        conn_config = target.connection.typed_config(SlackConnectionConfig)
        payload: Dict[str, Any] = {"channel": target.connection.external_id}

        if conn_config.post_format == "blocks":
            payload["blocks"] = self._format_blocks(message, conn_config.include_content)
            payload["text"] = (
                f"{change_emoji(message.change_kind)} {message.title} "
                f"was {message.change_kind.value} by {message.author}"
            )
        else:
            payload["text"] = self._format_text(message, conn_config.include_content)

        async with self.http_client() as client:
            resp = await client.post(
                f"{_SLACK_API}/chat.postMessage",
                json=payload,
                headers={"Authorization": f"Bearer {target.credentials.access_token}"},
            )
            raise_for_provider_status(resp, "Slack")
            data = resp.json()
        _raise_for_slack_error(data, "chat.postMessage")
        logger.debug("Posted to Slack channel %s (ts=%s)", target.connection.external_id, data.get("ts"))

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        try:
            async with self.http_client() as client:
                resp = await client.get(
                    f"{_SLACK_API}/conversations.info",
                    params={"channel": target.connection.external_id},
                    headers={"Authorization": f"Bearer {target.credentials.access_token}"},
                )
            if not resp.is_success:
                return False
            data = resp.json()
            return bool(data.get("ok")) and not (data.get("channel") or {}).get("is_archived", False)
        except Exception:
            logger.warning("Slack connection validation failed", exc_info=True)
            return False

    # ── Formatting ──────────────────────────────────────────────────────

    def _format_blocks(self, message: MessageData, include_content: bool) -> List[Dict[str, Any]]:
        emoji = change_emoji(message.change_kind)
        blocks: List[Dict[str, Any]] = [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"{emoji} *{message.title}* was {message.change_kind.value} by *{message.author}*",
                },
            }
        ]
        if include_content and message.content.strip():
            blocks.append(
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": truncate_text(message.content, self.settings.message_content_max_length),
                    },
                }
            )
        if is_valid_url(message.record_url):
            blocks.append(
                {
                    "type": "actions",
                    "elements": [
                        {
                            "type": "button",
                            "text": {"type": "plain_text", "text": "View Record", "emoji": True},
                            "url": message.record_url,
                            "style": "primary",
                        }
                    ],
                }
            )
        else:
            blocks.append(
                {
                    "type": "context",
                    "elements": [{"type": "mrkdwn", "text": f"View Record: {message.record_url}"}],
                }
            )
        blocks.append({"type": "divider"})
        return blocks

    def _format_text(self, message: MessageData, include_content: bool) -> str:
        text = (
            f"{change_emoji(message.change_kind)} *{message.title}* "
            f"was {message.change_kind.value} by {message.author}"
        )
        if include_content and message.content.strip():
            text += f"\n\n{truncate_text(message.content, 300)}"
        return text + f"\n\n<{message.record_url}|View Record>"
