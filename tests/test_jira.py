"""
Tests for JiraProvider against a mocked Atlassian API.
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from unittest.mock import AsyncMock

from connectors.base import ConnectionTarget, ProviderCredentials
from connectors.context import build_context
from connectors.errors import OAuthCallbackError, ProviderAPIError
from connectors.jira import JiraProvider
from connectors.schemas import (
    ChangeKind,
    Connection,
    Integration,
    JiraConfig,
    MessageData,
    OAuthCallbackParams,
    OAuthState,
    ProviderCategory,
    TokenData,
)

SITE_CONFIG = {
    "instance_url": "https://acme.atlassian.net",
    "cloud_id": "cloud-1",
    "user": {"account_id": "acc-1", "display_name": "Ada"},
}

MESSAGE = MessageData(
    title="Launch plan",
    content="Ship it on Monday",
    author="Ada",
    record_url="https://app.example.com/records/rec-1",
    change_kind=ChangeKind.UPDATED,
)


def _credentials(config=None, renew=None) -> ProviderCredentials:
    integration = Integration(
        id="int-1",
        tenant_id="tenant-1",
        provider_name="jira",
        category=ProviderCategory.TICKETING,
        config=config or SITE_CONFIG,
    )
    return ProviderCredentials(integration=integration, access_token="at-1", renew=renew)


def _target(credentials=None, **config) -> ConnectionTarget:
    connection = Connection(
        id="conn-1", record_id="rec-1", integration_id="int-1", external_id="PROJ", config=config
    )
    return ConnectionTarget(connection, credentials or _credentials())


def _provider(settings, handler) -> JiraProvider:
    return JiraProvider(settings, transport=httpx.MockTransport(handler))


def _state(**extra) -> OAuthState:
    return OAuthState(
        tenant_id="tenant-1", provider_name="jira", timestamp=0, nonce="n", **extra
    )


class TestOAuth:
    @pytest.mark.asyncio
    async def test_auth_url(self, settings):
        url = await JiraProvider(settings).get_auth_url("tenant-1", "https://app/cb", {"state": "s"})
        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://auth.atlassian.com/authorize?")
        assert query["audience"] == ["api.atlassian.com"]
        assert query["prompt"] == ["consent"]
        assert "offline_access" in query["scope"][0].split()

    @pytest.mark.asyncio
    async def test_callback(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/token":
                body = json.loads(request.content)
                assert body["grant_type"] == "authorization_code"
                assert body["redirect_uri"] == "https://app/cb"
                return httpx.Response(
                    200,
                    json={
                        "access_token": "at",
                        "refresh_token": "rt",
                        "expires_in": 3600,
                        "scope": "read:jira-work",
                    },
                )
            if request.url.path == "/me":
                return httpx.Response(200, json={"account_id": "acc-1", "name": "Ada", "email": "a@x"})
            if request.url.path == "/oauth/token/accessible-resources":
                return httpx.Response(
                    200, json=[{"id": "cloud-1", "url": "https://acme.atlassian.net", "name": "acme"}]
                )
            return httpx.Response(404)

        params = OAuthCallbackParams(code="c", state_data=_state(redirect_uri="https://app/cb"))
        token = await _provider(settings, handler).handle_callback(params)

        assert token.access_token == "at"
        assert token.refresh_token == "rt"
        assert token.expires_at is not None
        assert token.metadata["cloud_id"] == "cloud-1"
        assert token.metadata["user"]["account_id"] == "acc-1"
        # The metadata is a valid Jira integration config.
        JiraConfig.model_validate({**token.metadata, "scope": token.scope})

    @pytest.mark.asyncio
    async def test_callback_requires_redirect_uri_in_state(self, settings):
        with pytest.raises(OAuthCallbackError, match="redirect URI"):
            await JiraProvider(settings).handle_callback(
                OAuthCallbackParams(code="c", state_data=_state())
            )

    @pytest.mark.asyncio
    async def test_callback_without_sites(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/token":
                return httpx.Response(200, json={"access_token": "at"})
            if request.url.path == "/me":
                return httpx.Response(200, json={"account_id": "acc-1"})
            return httpx.Response(200, json=[])

        params = OAuthCallbackParams(code="c", state_data=_state(redirect_uri="https://app/cb"))
        with pytest.raises(OAuthCallbackError, match="No accessible Jira sites"):
            await _provider(settings, handler).handle_callback(params)

    @pytest.mark.asyncio
    async def test_refresh(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["grant_type"] == "refresh_token"
            return httpx.Response(200, json={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600})

        token = await _provider(settings, handler).refresh_token("rt-1")
        assert (token.access_token, token.refresh_token) == ("at-2", "rt-2")

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, settings):
        handler = lambda request: httpx.Response(403, json={"error": "unauthorized_client"})
        with pytest.raises(ProviderAPIError) as info:
            await _provider(settings, handler).refresh_token("rt-1")
        assert info.value.error_code == "unauthorized_client"


class TestChannels:
    @pytest.mark.asyncio
    async def test_projects(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/ex/jira/cloud-1/rest/api/3/project/search"
            return httpx.Response(
                200, json={"values": [{"id": "10", "key": "PROJ", "name": "Project", "projectTypeKey": "software"}]}
            )

        (channel,) = await _provider(settings, handler).get_available_channels(_credentials())
        assert channel.id == "PROJ"
        assert channel.name == "PROJ - Project"
        assert channel.metadata["project_type"] == "software"

    @pytest.mark.asyncio
    async def test_renews_once_on_401(self, settings):
        tokens = []

        def handler(request: httpx.Request) -> httpx.Response:
            tokens.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer at-1":
                return httpx.Response(401, json={"message": "expired"})
            return httpx.Response(200, json={"values": []})

        fresh = ProviderCredentials(integration=_credentials().integration, access_token="at-2")
        creds = _credentials(renew=AsyncMock(return_value=fresh))

        assert await _provider(settings, handler).get_available_channels(creds) == []
        assert tokens == ["Bearer at-1", "Bearer at-2"]


class TestPostMessage:
    @staticmethod
    def _handler(created, issue_types=("Bug", "Task")):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/issue/createmeta"):
                return httpx.Response(
                    200,
                    json={
                        "projects": [
                            {"issuetypes": [{"name": n, "subtask": False} for n in issue_types]}
                        ]
                    },
                )
            if request.url.path.endswith("/issue"):
                created.update(json.loads(request.content))
                return httpx.Response(201, json={"key": "PROJ-1"})
            return httpx.Response(404)

        return handler

    @pytest.mark.asyncio
    async def test_creates_issue(self, settings):
        created = {}
        await _provider(settings, self._handler(created)).post_message(_target(), MESSAGE)

        fields = created["fields"]
        assert fields["project"] == {"key": "PROJ"}
        assert fields["summary"] == "[UPDATED] Launch plan"
        assert fields["issuetype"] == {"name": "Task"}
        text = fields["description"]["content"][0]["content"][0]["text"]
        assert "Record updated by Ada" in text
        assert "Ship it on Monday" in text
        assert "reporter" not in fields

    @pytest.mark.asyncio
    async def test_created_summary_has_no_prefix_and_is_capped(self, settings):
        created = {}
        message = MESSAGE.model_copy(update={"title": "x" * 400, "change_kind": ChangeKind.CREATED})
        await _provider(settings, self._handler(created)).post_message(_target(), message)
        summary = created["fields"]["summary"]
        assert len(summary) == 255
        assert summary.startswith("xxx")

    @pytest.mark.asyncio
    async def test_falls_back_to_first_issue_type(self, settings):
        created = {}
        await _provider(settings, self._handler(created, issue_types=("Story",))).post_message(
            _target(), MESSAGE
        )
        assert created["fields"]["issuetype"] == {"name": "Story"}

    @pytest.mark.asyncio
    async def test_connection_overrides(self, settings):
        created = {}
        target = _target(include_record_content=False, reporter_account_id="acc-9", default_issue_type="bug")
        await _provider(settings, self._handler(created)).post_message(target, MESSAGE)

        fields = created["fields"]
        assert fields["issuetype"] == {"name": "Bug"}
        assert fields["reporter"] == {"id": "acc-9"}
        assert "Ship it on Monday" not in fields["description"]["content"][0]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_bot_user_as_reporter(self, settings):
        created = {}
        config = {
            **SITE_CONFIG,
            "use_bot_user": True,
            "bot_user": {"account_id": "bot-1", "display_name": "Bot"},
        }
        await _provider(settings, self._handler(created)).post_message(
            _target(_credentials(config)), MESSAGE
        )
        assert created["fields"]["reporter"] == {"id": "bot-1"}


class TestBotUserConfiguration:
    @staticmethod
    async def _connected(settings, store, records, handler):
        ctx = build_context(store, records, settings, providers=[_provider(settings, handler)])
        integration = await ctx.manager.create_integration(
            "tenant-1", "jira", TokenData(access_token="at-1"), SITE_CONFIG
        )
        return ctx, integration

    @pytest.mark.asyncio
    async def test_bot_account_resolved_on_config_update(self, settings, store, records):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            assert request.url.path == "/ex/jira/cloud-1/rest/api/3/user"
            assert request.url.params["accountId"] == "bot-1"
            assert request.headers["authorization"] == "Bearer at-1"
            return httpx.Response(
                200,
                json={"accountId": "bot-1", "displayName": "Jira Bot", "emailAddress": "bot@acme.io"},
            )

        ctx, integration = await self._connected(settings, store, records, handler)
        updated = await ctx.manager.update_integration_config(
            integration.id,
            {**SITE_CONFIG, "use_bot_user": True, "bot_user": {"account_id": "bot-1"}},
        )

        assert len(seen) == 1
        assert updated.config["bot_user"] == {
            "account_id": "bot-1",
            "display_name": "Jira Bot",
            "email_address": "bot@acme.io",
        }
        site = JiraConfig.model_validate(store.integrations[integration.id].config)
        assert site.use_bot_user and site.bot_user.display_name == "Jira Bot"

    @pytest.mark.asyncio
    async def test_no_lookup_without_bot_user(self, settings, store, records):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no Jira call expected")

        ctx, integration = await self._connected(settings, store, records, handler)
        updated = await ctx.manager.update_integration_config(
            integration.id, {**SITE_CONFIG, "default_issue_type": "Bug"}
        )
        assert updated.config["default_issue_type"] == "Bug"
        assert "bot_user" not in updated.config

    @pytest.mark.asyncio
    async def test_unknown_bot_account_leaves_config_untouched(self, settings, store, records):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"errorMessages": ["user not found"]})

        ctx, integration = await self._connected(settings, store, records, handler)
        with pytest.raises(ProviderAPIError):
            await ctx.manager.update_integration_config(
                integration.id,
                {**SITE_CONFIG, "use_bot_user": True, "bot_user": {"account_id": "ghost"}},
            )
        assert store.integrations[integration.id].config == integration.config


class TestValidateConnection:
    @pytest.mark.asyncio
    async def test_project_reachable(self, settings):
        handler = lambda request: httpx.Response(200, json={"key": "PROJ"})
        assert await _provider(settings, handler).validate_connection(_target()) is True

    @pytest.mark.asyncio
    async def test_project_gone(self, settings):
        handler = lambda request: httpx.Response(404, json={})
        assert await _provider(settings, handler).validate_connection(_target()) is False
