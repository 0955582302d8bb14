"""
Tests for GitLabProvider against mocked gitlab.com and self-managed instances.
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError
from unittest.mock import AsyncMock

from connectors.base import ConnectionTarget, ProviderCredentials
from connectors.context import build_context
from connectors.errors import ProviderAPIError, ValidationError
from connectors.gitlab import GitLabProvider
from connectors.schemas import (
    ChangeKind,
    Connection,
    GitLabConfig,
    Integration,
    MessageData,
    OAuthCallbackParams,
    OAuthState,
    ProviderCategory,
)
from tests.conftest import make_settings

SELF_MANAGED = "https://git.acme.io"

MESSAGE = MessageData(
    title="Launch plan",
    content="Ship it on Monday",
    author="Ada",
    record_url="https://app.example.com/records/rec-1",
    change_kind=ChangeKind.UPDATED,
)


@pytest.fixture
def settings():
    return make_settings(gitlab_instance_urls=[SELF_MANAGED + "/"])


def _integration(instance_url=SELF_MANAGED) -> Integration:
    return Integration(
        id="int-1",
        tenant_id="tenant-1",
        provider_name="gitlab",
        category=ProviderCategory.TICKETING,
        config={"instance_url": instance_url, "user": {"id": 1, "username": "ada"}},
    )


def _credentials(instance_url=SELF_MANAGED, renew=None) -> ProviderCredentials:
    return ProviderCredentials(
        integration=_integration(instance_url), access_token="glpat-1", renew=renew
    )


def _target(credentials=None, **config) -> ConnectionTarget:
    connection = Connection(
        id="conn-1", record_id="rec-1", integration_id="int-1", external_id="42", config=config
    )
    return ConnectionTarget(connection, credentials or _credentials())


def _provider(settings, handler) -> GitLabProvider:
    return GitLabProvider(settings, transport=httpx.MockTransport(handler))


def _state(**extra) -> OAuthState:
    return OAuthState(
        tenant_id="tenant-1", provider_name="gitlab", timestamp=0, nonce="n", **extra
    )


class TestInstances:
    def test_default_instance(self, settings):
        assert GitLabProvider(settings).instance_url() == "https://gitlab.com"

    def test_listed_instance_normalised(self, settings):
        assert GitLabProvider(settings).instance_url(SELF_MANAGED + "/") == SELF_MANAGED

    def test_unlisted_instance_rejected(self, settings):
        with pytest.raises(ValidationError, match="not configured"):
            GitLabProvider(settings).instance_url("https://evil.example")

    def test_config_requires_https_instance(self):
        with pytest.raises(PydanticValidationError):
            GitLabConfig.model_validate(
                {"instance_url": "http://git.acme.io", "user": {"id": 1, "username": "ada"}}
            )


class TestOAuth:
    @pytest.mark.asyncio
    async def test_auth_url_defaults_to_gitlab_com(self, settings):
        url = await GitLabProvider(settings).get_auth_url("tenant-1", "https://app/cb", {"state": "s"})
        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://gitlab.com/oauth/authorize?")
        assert query["client_id"] == ["gl-id"]
        assert query["scope"] == ["api read_user read_repository write_repository"]
        assert query["state"] == ["s"]

    @pytest.mark.asyncio
    async def test_auth_url_self_managed(self, settings):
        url = await GitLabProvider(settings).get_auth_url(
            "tenant-1", "https://app/cb", {"state": "s", "instance_url": SELF_MANAGED}
        )
        assert url.startswith(f"{SELF_MANAGED}/oauth/authorize?")

    @pytest.mark.asyncio
    async def test_auth_url_unlisted_instance(self, settings):
        with pytest.raises(ValidationError):
            await GitLabProvider(settings).get_auth_url(
                "tenant-1", "https://app/cb", {"state": "s", "instance_url": "https://evil.example"}
            )

    @pytest.mark.asyncio
    async def test_callback_against_self_managed_instance(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            assert request.url.host == "git.acme.io"
            if request.url.path == "/oauth/token":
                body = json.loads(request.content)
                assert body["grant_type"] == "authorization_code"
                assert body["redirect_uri"] == "https://app/cb"
                assert body["client_secret"] == "gl-secret"
                return httpx.Response(
                    200,
                    json={"access_token": "gl-at", "refresh_token": "gl-rt", "expires_in": 7200, "scope": "api"},
                )
            assert request.headers["authorization"] == "Bearer gl-at"
            return httpx.Response(200, json={"id": 9, "username": "ada", "name": "Ada"})

        params = OAuthCallbackParams(
            code="c", state_data=_state(redirect_uri="https://app/cb", instance_url=SELF_MANAGED)
        )
        token = await _provider(settings, handler).handle_callback(params)

        assert seen == [f"{SELF_MANAGED}/oauth/token", f"{SELF_MANAGED}/api/v4/user"]
        assert token.refresh_token == "gl-rt"
        assert token.expires_at is not None
        config = GitLabConfig.model_validate(token.metadata)
        assert config.instance_url == SELF_MANAGED
        assert config.user.username == "ada"

    @pytest.mark.asyncio
    async def test_refresh_uses_integration_instance(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": "gl-at-2", "expires_in": 7200})

        token = await _provider(settings, handler).refresh_integration_token(
            "gl-rt", _integration()
        )

        assert seen["url"] == f"{SELF_MANAGED}/oauth/token"
        assert seen["body"]["grant_type"] == "refresh_token"
        assert token.access_token == "gl-at-2"
        # Kept when GitLab does not rotate it.
        assert token.refresh_token == "gl-rt"

    @pytest.mark.asyncio
    async def test_refresh_without_integration_uses_default_instance(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["host"] = request.url.host
            return httpx.Response(200, json={"access_token": "a", "refresh_token": "r-2"})

        token = await _provider(settings, handler).refresh_token("r-1")
        assert seen["host"] == "gitlab.com"
        assert token.refresh_token == "r-2"

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, settings):
        handler = lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        with pytest.raises(ProviderAPIError) as info:
            await _provider(settings, handler).refresh_integration_token("gl-rt", _integration())
        assert info.value.error_code == "invalid_grant"


class TestSelfManagedFlow:
    @pytest.mark.asyncio
    async def test_instance_kept_from_auth_url_to_stored_config(self, settings, store, records):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "git.acme.io"
            if request.url.path == "/oauth/token":
                return httpx.Response(200, json={"access_token": "gl-at", "refresh_token": "gl-rt"})
            return httpx.Response(200, json={"id": 9, "username": "ada"})

        ctx = build_context(store, records, settings, providers=[_provider(settings, handler)])
        initiation = await ctx.manager.initiate_oauth(
            "tenant-1", "gitlab", "https://app/cb", {"instance_url": SELF_MANAGED}
        )
        integration = await ctx.manager.handle_oauth_callback(
            "gitlab", OAuthCallbackParams(code="c", state=initiation.state)
        )

        assert initiation.auth_url.startswith(f"{SELF_MANAGED}/oauth/authorize?")
        assert integration.config["instance_url"] == SELF_MANAGED
        assert integration.config["user"]["username"] == "ada"


class TestChannels:
    @pytest.mark.asyncio
    async def test_projects_as_channels(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            return httpx.Response(
                200,
                json=[
                    {
                        "id": 42,
                        "name": "app",
                        "name_with_namespace": "Acme / app",
                        "path_with_namespace": "acme/app",
                        "visibility": "private",
                        "web_url": f"{SELF_MANAGED}/acme/app",
                        "default_branch": "main",
                    },
                    {"id": 43, "name_with_namespace": "Acme / site", "visibility": "public"},
                    {"id": 44, "name_with_namespace": "Acme / old", "archived": True},
                    {"id": 45, "name_with_namespace": "Acme / wiki", "issues_enabled": False},
                ],
            )

        channels = await _provider(settings, handler).get_available_channels(_credentials())

        assert seen["url"].host == "git.acme.io"
        assert seen["url"].path == "/api/v4/projects"
        assert seen["url"].params["membership"] == "true"
        assert [(c.id, c.name, c.kind.value) for c in channels] == [
            ("42", "Acme / app", "private"),
            ("43", "Acme / site", "public"),
        ]
        assert channels[0].metadata["path_with_namespace"] == "acme/app"

    @pytest.mark.asyncio
    async def test_renews_once_on_401(self, settings):
        tokens = []

        def handler(request: httpx.Request) -> httpx.Response:
            tokens.append(request.headers["authorization"])
            if request.headers["authorization"] == "Bearer glpat-1":
                return httpx.Response(401, json={"message": "401 Unauthorized"})
            return httpx.Response(200, json=[])

        fresh = ProviderCredentials(integration=_integration(), access_token="glpat-2")
        renew = AsyncMock(return_value=fresh)

        channels = await _provider(settings, handler).get_available_channels(
            _credentials(renew=renew)
        )

        assert channels == []
        assert tokens == ["Bearer glpat-1", "Bearer glpat-2"]
        renew.assert_awaited_once()


class TestPostMessage:
    @pytest.mark.asyncio
    async def test_creates_issue(self, settings):
        created = {}

        def handler(request: httpx.Request) -> httpx.Response:
            created["url"] = str(request.url)
            created["body"] = json.loads(request.content)
            return httpx.Response(201, json={"iid": 7})

        target = _target(default_labels=["docs", "triage"], default_milestone_id=3, default_assignee_id=9)
        await _provider(settings, handler).post_message(target, MESSAGE)

        body = created["body"]
        assert created["url"] == f"{SELF_MANAGED}/api/v4/projects/42/issues"
        assert body["title"].endswith("Launch plan")
        assert body["description"].startswith("**Note by Ada**")
        assert "Ship it on Monday" in body["description"]
        assert "[View full note](https://app.example.com/records/rec-1)" in body["description"]
        assert body["labels"] == "docs,triage"
        assert body["milestone_id"] == 3
        assert body["assignee_ids"] == [9]

    @pytest.mark.asyncio
    async def test_without_content(self, settings):
        created = {}

        def handler(request: httpx.Request) -> httpx.Response:
            created.update(json.loads(request.content))
            return httpx.Response(201, json={"iid": 8})

        await _provider(settings, handler).post_message(
            _target(include_record_content=False), MESSAGE
        )
        assert "Ship it on Monday" not in created["description"]
        assert "labels" not in created

    @pytest.mark.asyncio
    async def test_forbidden(self, settings):
        handler = lambda request: httpx.Response(403, json={"message": "403 Forbidden"})
        with pytest.raises(ProviderAPIError) as info:
            await _provider(settings, handler).post_message(_target(), MESSAGE)
        assert info.value.status_code == 403


class TestValidateConnection:
    @pytest.mark.asyncio
    async def test_project_reachable(self, settings):
        handler = lambda request: httpx.Response(200, json={"id": 42, "archived": False})
        assert await _provider(settings, handler).validate_connection(_target()) is True

    @pytest.mark.asyncio
    async def test_project_gone(self, settings):
        handler = lambda request: httpx.Response(404, json={"message": "404 Project Not Found"})
        assert await _provider(settings, handler).validate_connection(_target()) is False

    @pytest.mark.asyncio
    async def test_unlisted_instance_is_false(self, settings):
        handler = lambda request: httpx.Response(200, json={"id": 42})
        target = _target(_credentials(instance_url="https://gone.example"))
        assert await _provider(settings, handler).validate_connection(target) is False
