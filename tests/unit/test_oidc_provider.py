"""Unit tests for the OIDC and Authentik providers"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from auth_broker.core.auth.oidc import GENERIC_LOGIN_FAILURE, AuthentikAuthProvider, OIDCAuthProvider
from auth_broker.core.auth.provider import ProviderContext

ISSUER = "https://idp.example.com/realms/main"
CONFIG = {
    "client_id": "client-123",
    "client_secret": "secret-456",
    "issuer": ISSUER,
    "scope": "openid profile email",
}
DISCOVERY = {
    "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
    "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
    "userinfo_endpoint": f"{ISSUER}/protocol/openid-connect/userinfo",
}
USERINFO = {"sub": "idp-user-1", "email": "alice@example.com", "name": "Alice", "picture": "https://cdn/a.png"}


class FakeIdP:
    """Records requests and answers like a standard OIDC provider"""

    def __init__(self, token_status=200, userinfo=None):
        self.requests = []
        self.token_status = token_status
        self.userinfo = userinfo or USERINFO

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json=DISCOVERY)
        if path.endswith("/token") or path.endswith("/token/"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "upstream-access", "token_type": "Bearer"})
        if path.endswith("/userinfo") or path.endswith("/userinfo/"):
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)


def make_provider(provider_context, idp, cls=OIDCAuthProvider):
    context = ProviderContext(
        settings=provider_context.settings,
        user_store=provider_context.user_store,
        tokens=provider_context.tokens,
        http_transport=httpx.MockTransport(idp),
    )
    return cls(context)


@pytest.mark.unit
class TestAuthorizationUrl:
    """Test the redirect to the identity provider"""

    @pytest.mark.asyncio
    async def test_url_from_discovery(self, provider_context):
        """Happy path: endpoint and parameters come from the discovery document"""
        provider = make_provider(provider_context, FakeIdP())

        url = await provider.get_authorization_url(CONFIG, "https://app.example.com/auth/callback", "state-1")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert url.startswith(DISCOVERY["authorization_endpoint"])
        assert params["client_id"] == ["client-123"]
        assert params["redirect_uri"] == ["https://app.example.com/auth/callback"]
        assert params["state"] == ["state-1"]
        assert params["response_type"] == ["code"]
        assert params["scope"] == ["openid profile email"]

    @pytest.mark.asyncio
    async def test_discovery_fetched_once(self, provider_context):
        """Edge case: the discovery document is cached per issuer"""
        idp = FakeIdP()
        provider = make_provider(provider_context, idp)

        await provider.get_authorization_url(CONFIG, "https://app/cb", "s1")
        await provider.get_authorization_url(CONFIG, "https://app/cb", "s2")

        assert len(idp.requests) == 1

    @pytest.mark.asyncio
    async def test_authentik_fixed_paths(self, provider_context):
        """Happy path: Authentik endpoints live under /application/o/"""
        idp = FakeIdP()
        provider = make_provider(provider_context, idp, cls=AuthentikAuthProvider)
        config = dict(CONFIG, issuer="https://auth.example.com/application/o/my-app/")

        url = await provider.get_authorization_url(config, "https://app/cb", "s1")

        assert url.startswith("https://auth.example.com/application/o/authorize/?")
        assert idp.requests == []


@pytest.mark.unit
class TestCallback:
    """Test the code exchange"""

    @pytest.mark.asyncio
    async def test_callback_creates_user_and_session(self, provider_context, user_store):
        """Happy path: code exchange upserts the user and issues a session"""
        idp = FakeIdP()
        provider = make_provider(provider_context, idp)

        result = await provider.handle_callback(CONFIG, "auth-code", "https://app/cb")

        assert result.success is True
        assert result.user["email"] == "alice@example.com"
        user = await user_store.get_by_external_id("idp-user-1")
        assert user.provider == "oidc_generic"
        session = await provider.verify_session(CONFIG, result.session_token)
        assert session.subject == "idp-user-1"
        assert session.local_user_id == user.id
        assert session.auth_type == "oidc_generic"

        token_request = next(r for r in idp.requests if r.url.path.endswith("/token"))
        form = parse_qs(token_request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]
        assert form["client_secret"] == ["secret-456"]

    @pytest.mark.asyncio
    async def test_second_login_updates_same_row(self, provider_context, user_store):
        provider = make_provider(provider_context, FakeIdP())

        await provider.handle_callback(CONFIG, "code-1", "https://app/cb")
        await provider.handle_callback(CONFIG, "code-2", "https://app/cb")

        assert await user_store.count_users() == 1

    @pytest.mark.asyncio
    async def test_rejected_code_generic_error(self, provider_context, user_store):
        """Bad input: upstream rejection surfaces as a generic failure"""
        provider = make_provider(provider_context, FakeIdP(token_status=400))

        result = await provider.handle_callback(CONFIG, "bad-code", "https://app/cb")

        assert result.success is False
        assert result.error == GENERIC_LOGIN_FAILURE
        assert await user_store.count_users() == 0

    @pytest.mark.asyncio
    async def test_userinfo_without_email(self, provider_context):
        """Bad input: userinfo lacking an email cannot create a user"""
        provider = make_provider(provider_context, FakeIdP(userinfo={"sub": "idp-user-2"}))

        result = await provider.handle_callback(CONFIG, "code", "https://app/cb")

        assert result.error == GENERIC_LOGIN_FAILURE

    @pytest.mark.asyncio
    async def test_unreachable_idp(self, provider_context):
        """Bad input: transport failure is a generic login failure"""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = make_provider(provider_context, refuse)

        result = await provider.handle_callback(CONFIG, "code", "https://app/cb")

        assert result.error == GENERIC_LOGIN_FAILURE

    @pytest.mark.asyncio
    async def test_deactivated_user_refused(self, provider_context, user_store):
        """Edge case: the IdP marks the account inactive"""
        provider = make_provider(provider_context, FakeIdP(userinfo=dict(USERINFO, active=False)))

        result = await provider.handle_callback(CONFIG, "code", "https://app/cb")

        assert result.success is False
