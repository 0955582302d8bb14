"""
TrelloProvider — OAuth 1.0a (request token / verifier) for Trello.

Flow:
1. ``get_auth_url`` signs a request-token call (HMAC-SHA1), parks the
   request-token secret and the signed state in a ``RequestTokenStore``
   and returns Trello's authorize URL.
2. Trello redirects back with ``oauth_token`` + ``oauth_verifier``;
   ``callback_state`` recovers the signed state by ``oauth_token`` and
   ``handle_callback`` trades the verifier for an access token.

Trello tokens issued with ``expiration=never`` do not expire.  The access
token secret is kept in the encrypted refresh-token slot.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, quote, urlencode

import httpx

from config.settings import Settings, config
from connectors.base import ConnectionTarget, IntegrationProvider, ProviderCredentials
from connectors.errors import (
    ConfigurationError,
    OAuthCallbackError,
    ProviderAPIError,
    UnsupportedOperationError,
)
from connectors.oauth_state import OAuthStateManager
from connectors.request_tokens import RequestTokenStore
from connectors.schemas import (
    Channel,
    ChannelKind,
    MessageData,
    OAuthCallbackParams,
    ProviderCategory,
    TokenData,
    TrelloConfig,
    TrelloConnectionConfig,
)
from connectors.utils import format_task_title, raise_for_provider_status

logger = logging.getLogger(__name__)

_TRELLO_AUTH_BASE = "https://trello.com/1"
_TRELLO_API = "https://api.trello.com/1"
_REQUEST_TOKEN_URL = f"{_TRELLO_AUTH_BASE}/OAuthGetRequestToken"
_ACCESS_TOKEN_URL = f"{_TRELLO_AUTH_BASE}/OAuthGetAccessToken"


def _pct(value: str) -> str:
    return quote(value, safe="~")


def oauth1_signature(
    method: str,
    url: str,
    params: Dict[str, str],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """HMAC-SHA1 signature over the OAuth 1.0a signature base string."""
    normalized = "&".join(
        f"{_pct(k)}={_pct(params[k] or '')}" for k in sorted(params)
    )
    base_string = "&".join([method.upper(), _pct(url), _pct(normalized)])
    signing_key = f"{_pct(consumer_secret)}&{_pct(token_secret)}"
    digest = hmac.new(signing_key.encode(), base_string.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


class TrelloProvider(IntegrationProvider):
    """OAuth 1.0a provider for Trello boards."""

    config_model = TrelloConfig
    connection_config_model = TrelloConnectionConfig

    def __init__(
        self,
        settings: Settings = config,
        *,
        state_manager: Optional[OAuthStateManager] = None,
        request_tokens: Optional[RequestTokenStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(settings, state_manager=state_manager, transport=transport)
        self.request_tokens = request_tokens or RequestTokenStore(
            settings.request_token_ttl_seconds, settings.request_token_max_entries
        )

    @property
    def name(self) -> str:
        return "trello"

    @property
    def display_name(self) -> str:
        return "Trello"

    @property
    def category(self) -> ProviderCategory:
        return ProviderCategory.PRODUCTIVITY

    @property
    def description(self) -> str:
        return "Connect records to Trello boards for task management and project organization"

    @property
    def icon(self) -> str:
        return "📋"

    def is_configured(self) -> bool:
        return bool(self.settings.trello_api_key and self.settings.trello_api_secret)

    def _require_credentials(self) -> None:
        if not self.is_configured():
            raise ConfigurationError(
                "TRELLO_API_KEY and TRELLO_API_SECRET environment variables are required"
            )

    def _oauth_params(self, **extra: str) -> Dict[str, str]:
        params = {
            "oauth_consumer_key": self.settings.trello_api_key,
            "oauth_nonce": secrets.token_hex(16),
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": str(int(time.time())),
            "oauth_version": "1.0",
        }
        params.update(extra)
        return params

    async def _signed_post(
        self, url: str, params: Dict[str, str], token_secret: str = ""
    ) -> Dict[str, str]:
        params["oauth_signature"] = oauth1_signature(
            "POST", url, params, self.settings.trello_api_secret, token_secret
        )
        async with self.http_client() as client:
            resp = await client.post(url, data=params)
            raise_for_provider_status(resp, "Trello")
        return {k: v[0] for k, v in parse_qs(resp.text).items()}

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def get_auth_url(
        self,
        tenant_id: str,
        redirect_uri: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._require_credentials()
        state = self.resolve_state(tenant_id, redirect_uri, extra)

        reply = await self._signed_post(
            _REQUEST_TOKEN_URL, self._oauth_params(oauth_callback=redirect_uri)
        )
        request_token = reply.get("oauth_token")
        request_secret = reply.get("oauth_token_secret")
        if not request_token or not request_secret:
            raise ProviderAPIError("Failed to get request token from Trello")

        self.request_tokens.put(request_token, tenant_id, request_secret, state)

        query = {
            "oauth_token": request_token,
            "name": self.settings.trello_app_name,
            "scope": "read,write",
            "expiration": "never",
        }
        return f"{_TRELLO_AUTH_BASE}/OAuthAuthorizeToken?{urlencode(query)}"

    async def callback_state(self, params: OAuthCallbackParams) -> Optional[str]:
        if params.state:
            return params.state
        if not params.oauth_token:
            return None
        ctx = self.request_tokens.get(params.oauth_token)
        return ctx.state if ctx else None

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        self._require_credentials()
        verifier = params.oauth_verifier or params.code
        if not verifier:
            raise OAuthCallbackError("OAuth verifier is required")
        if not params.oauth_token:
            raise OAuthCallbackError("OAuth token is required for OAuth 1.0a flow")

        ctx = self.request_tokens.pop(params.oauth_token)
        if ctx is None:
            raise OAuthCallbackError("Request token context not found or expired")

        reply = await self._signed_post(
            _ACCESS_TOKEN_URL,
            self._oauth_params(oauth_token=params.oauth_token, oauth_verifier=verifier),
            token_secret=ctx.request_token_secret,
        )
        access_token = reply.get("oauth_token")
        token_secret = reply.get("oauth_token_secret")
        if not access_token or not token_secret:
            raise OAuthCallbackError("Failed to get access token from Trello")

        async with self.http_client() as client:
            resp = await client.get(
                f"{_TRELLO_API}/members/me",
                params={
                    "key": self.settings.trello_api_key,
                    "token": access_token,
                    "fields": "id,username,fullName,email,avatarUrl",
                    "boards": "open",
                    "board_fields": "id,name,url",
                },
            )
            raise_for_provider_status(resp, "Trello")
            member = resp.json()

        return TokenData(
            access_token=access_token,
            refresh_token=token_secret,
            scope="read,write",
            metadata={
                "user": {
                    "id": member.get("id"),
                    "username": member.get("username"),
                    "full_name": member.get("fullName") or "",
                    "email": member.get("email"),
                    "avatar_url": member.get("avatarUrl"),
                },
                "boards": [
                    {"id": b["id"], "name": b.get("name", ""), "url": b.get("url", "")}
                    for b in member.get("boards") or []
                ],
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise UnsupportedOperationError("Trello tokens do not expire and cannot be refreshed")

    # ── Channels & messages ─────────────────────────────────────────────

    def _auth_query(self, access_token: str, **extra: str) -> Dict[str, str]:
        return {"key": self.settings.trello_api_key, "token": access_token, **extra}

    async def get_available_channels(self, credentials: ProviderCredentials) -> List[Channel]:
        channels: List[Channel] = []
        async with self.http_client() as client:
            resp = await client.get(
                f"{_TRELLO_API}/members/me/boards",
                params=self._auth_query(credentials.access_token, filter="open"),
            )
            raise_for_provider_status(resp, "Trello")
            boards = resp.json()

            for board in boards:
                lists_resp = await client.get(
                    f"{_TRELLO_API}/boards/{board['id']}/lists",
                    params=self._auth_query(credentials.access_token, filter="open"),
                )
                if not lists_resp.is_success:
                    logger.warning(
                        "Skipping Trello board %s: lists request failed (%d)",
                        board["id"],
                        lists_resp.status_code,
                    )
                    continue
                for lst in lists_resp.json():
                    channels.append(
                        Channel(
                            id=lst["id"],
                            name=f"{board['name']} / {lst['name']}",
                            kind=ChannelKind.PUBLIC,
                            metadata={
                                "board_id": board["id"],
                                "board_name": board["name"],
                                "list_name": lst["name"],
                                "board_url": board.get("url"),
                            },
                        )
                    )
        return channels

    async def post_message(self, target: ConnectionTarget, message: MessageData) -> None:
        conn_config = target.connection.typed_config(TrelloConnectionConfig)
        list_id = conn_config.list_id or target.connection.external_id

        desc = f"**Created by:** {message.author}\n\n"
        if conn_config.include_record_content and message.content:
            desc += f"**Content:**\n{message.content}\n\n"
        desc += f"**Source:** [View Record]({message.record_url})"

        card = self._auth_query(
            target.credentials.access_token,
            idList=list_id,
            name=format_task_title(message),
            desc=desc,
            pos="top",
        )
        if conn_config.default_labels:
            card["idLabels"] = ",".join(conn_config.default_labels)
        if conn_config.default_members:
            card["idMembers"] = ",".join(conn_config.default_members)

        async with self.http_client() as client:
            resp = await client.post(f"{_TRELLO_API}/cards", params=card)
            raise_for_provider_status(resp, "Trello")
        logger.debug("Created Trello card in list %s", list_id)

    async def validate_connection(self, target: ConnectionTarget) -> bool:
        try:
            async with self.http_client() as client:
                resp = await client.get(
                    f"{_TRELLO_API}/lists/{target.connection.external_id}",
                    params=self._auth_query(target.credentials.access_token),
                )
            return resp.is_success and not resp.json().get("closed", False)
        except Exception:
            logger.warning("Trello connection validation failed", exc_info=True)
            return False

    async def revoke_token(self, access_token: str) -> bool:
        try:
            async with self.http_client() as client:
                resp = await client.delete(
                    f"{_TRELLO_API}/tokens/{access_token}",
                    params=self._auth_query(access_token),
                )
            return resp.is_success
        except Exception:
            logger.warning("Trello token revocation failed", exc_info=True)
            return False
