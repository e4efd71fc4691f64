"""Unit tests for ApiIntegrationProvider"""

import json

import httpx
import pytest

from auth_broker.core.auth.api_integration import ApiIntegrationProvider
from auth_broker.core.auth.errors import UpstreamError
from auth_broker.core.auth.provider import ProviderContext

CONFIG = {
    "base_url": "https://dir.example.com",
    "api_key": "integration-key",
    "user_endpoint": "/api/users",
    "sync_endpoint": "/api/users/sync",
    "verify_endpoint": None,
    "logout_endpoint": None,
    "timeout": 5.0,
}
DIRECTORY_USER = {"id": "dir-1", "email": "alice@example.com", "name": "Alice", "roles": ["editor"]}


class FakeDirectory:
    def __init__(self):
        self.requests = []
        self.session_valid = True

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/auth/login":
            body = json.loads(request.content)
            if body.get("password") == "right-password":
                return httpx.Response(200, json={"user": DIRECTORY_USER, "access_token": "upstream-token"})
            if body.get("password") == "explode":
                return httpx.Response(503, json={"message": "maintenance"})
            return httpx.Response(401, json={"message": "bad credentials"})
        if path == "/api/auth/verify":
            return httpx.Response(200 if self.session_valid else 401, json={})
        if path == "/api/auth/logout":
            return httpx.Response(200, json={})
        if path == "/api/users/dir-1":
            return httpx.Response(200, json=DIRECTORY_USER)
        if path == "/api/users/sync":
            return httpx.Response(200, json=[DIRECTORY_USER, {"id": "dir-2"}])
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def provider(provider_context, directory) -> ApiIntegrationProvider:
    context = ProviderContext(
        settings=provider_context.settings,
        user_store=provider_context.user_store,
        tokens=provider_context.tokens,
        http_transport=httpx.MockTransport(directory),
    )
    return ApiIntegrationProvider(context)


@pytest.mark.unit
class TestAuthenticate:
    """Test credential login against the directory"""

    @pytest.mark.asyncio
    async def test_login_upserts_user(self, provider, directory, user_store):
        """Happy path: directory user is stored and a session issued"""
        result = await provider.authenticate(CONFIG, {"email": "alice@example.com", "password": "right-password"})

        assert result.success is True
        user = await user_store.get_by_external_id("dir-1")
        assert user.provider == "api_integration"
        assert await user_store.get_user_roles(user.id) == ["editor"]
        request = directory.requests[0]
        assert request.headers["X-API-Key"] == "integration-key"
        assert request.headers["Authorization"] == "Bearer integration-key"

    @pytest.mark.asyncio
    async def test_session_carries_upstream_token(self, provider):
        result = await provider.authenticate(CONFIG, {"email": "alice@example.com", "password": "right-password"})

        verification = await provider.tokens.verify(result.session_token)

        assert verification.session.upstream_token == "upstream-token"

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, provider):
        """Bad input: directory 401 is reported as invalid credentials"""
        result = await provider.authenticate(CONFIG, {"email": "alice@example.com", "password": "wrong"})

        assert result.error == "Invalid email or password"

    @pytest.mark.asyncio
    async def test_upstream_error_generic(self, provider):
        """Edge case: directory 5xx detail is never echoed"""
        result = await provider.authenticate(CONFIG, {"email": "alice@example.com", "password": "explode"})

        assert result.error == "Authentication failed"


@pytest.mark.unit
class TestVerifySession:
    """Test upstream session re-checks"""

    @pytest.mark.asyncio
    async def test_upstream_check(self, provider, directory):
        """Happy path: configured verify endpoint is consulted"""
        config = dict(CONFIG, verify_endpoint="/api/auth/verify")
        login = await provider.authenticate(config, {"email": "alice@example.com", "password": "right-password"})

        assert await provider.verify_session(config, login.session_token) is not None
        directory.session_valid = False
        assert await provider.verify_session(config, login.session_token) is None
        assert directory.requests[-1].headers["Authorization"] == "Bearer upstream-token"

    @pytest.mark.asyncio
    async def test_logout_notifies_directory(self, provider, directory):
        config = dict(CONFIG, logout_endpoint="/api/auth/logout")
        login = await provider.authenticate(config, {"email": "alice@example.com", "password": "right-password"})

        assert await provider.logout(config, login.session_token) == {"success": True}

        assert directory.requests[-1].url.path == "/api/auth/logout"
        assert await provider.verify_session(config, login.session_token) is None


@pytest.mark.unit
class TestSync:
    """Test polling the directory"""

    @pytest.mark.asyncio
    async def test_sync_user(self, provider):
        result = await provider.sync_user(CONFIG, "dir-1")

        assert result["success"] is True
        assert result["action"] == "created"

    @pytest.mark.asyncio
    async def test_sync_unknown_user_raises(self, provider):
        """Bad input: directory 404"""
        with pytest.raises(UpstreamError):
            await provider.sync_user(CONFIG, "dir-404")

    @pytest.mark.asyncio
    async def test_sync_all_accepts_bare_list(self, provider, user_store):
        """Edge case: the sync endpoint may answer a bare list"""
        stats = await provider.sync_all_users(CONFIG)

        assert stats.to_dict() == {"total": 2, "created": 1, "updated": 0, "errors": 1}
        audit = await user_store.list_activity("api_sync_all")
        assert audit[0].status == "partial"
