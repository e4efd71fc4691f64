"""OpenID Connect (OIDC) authentication providers.

Authorization-code flow against an external identity provider:
- OIDCAuthProvider: any standard provider (Keycloak, Auth0, Okta, Google),
  endpoints read from the issuer's discovery document
- AuthentikAuthProvider: Authentik, whose endpoints live under
  /application/o/ on the issuer host

After a successful code exchange the user is upserted into the local store
by the provider's subject id and a broker session token is issued.
"""

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode, urlparse

import httpx
from sqlalchemy.exc import SQLAlchemyError

from auth_broker.core.auth.errors import UpstreamError
from auth_broker.core.auth.provider import AuthProvider, ProviderConfig, ProviderContext
from auth_broker.domain.models.auth import AuthResult, Session
from auth_broker.domain.services.user_sync import normalize_user_data

logger = logging.getLogger(__name__)

GENERIC_LOGIN_FAILURE = "Authentication failed"


class OIDCAuthProvider(AuthProvider):
    """OpenID Connect authentication provider.

    Example Configuration:
        AUTH_PROVIDER=oidc_generic
        OIDC_ISSUER=https://keycloak.example.com/realms/main
        OIDC_CLIENT_ID=xxx
        OIDC_CLIENT_SECRET=xxx
        OIDC_SCOPE="openid profile email"
    """

    provider_id = "oidc_generic"

    def __init__(self, context: ProviderContext):
        super().__init__(context)
        # Discovery documents keyed by issuer (lazy-loaded)
        self._discovery: dict[str, dict] = {}

    def _timeout(self, config: ProviderConfig) -> float:
        return float(config.get("timeout") or self.context.settings.http_timeout_seconds)

    def _client(self, config: ProviderConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout(config), transport=self.context.http_transport)

    async def _endpoints(self, config: ProviderConfig) -> dict[str, str]:
        """Fetch OIDC discovery document (.well-known/openid-configuration)."""
        issuer = config["issuer"].rstrip("/")
        if issuer not in self._discovery:
            discovery_url = f"{issuer}/.well-known/openid-configuration"
            async with self._client(config) as client:
                response = await client.get(discovery_url)
                response.raise_for_status()
                self._discovery[issuer] = response.json()
                logger.info(f"OIDC discovery loaded from {discovery_url}")
        discovery = self._discovery[issuer]
        return {
            "authorization": discovery["authorization_endpoint"],
            "token": discovery["token_endpoint"],
            "userinfo": discovery["userinfo_endpoint"],
        }

    async def get_authorization_url(
        self,
        config: ProviderConfig,
        redirect_uri: str,
        state: Optional[str] = None,
    ) -> str:
        """Generate the authorization URL the browser is redirected to.

        Args:
            config: Resolved provider configuration
            redirect_uri: Callback URL
            state: CSRF state issued by the caller (random when absent)

        Returns:
            Authorization URL
        """
        endpoints = await self._endpoints(config)
        params = {
            "response_type": "code",
            "client_id": config["client_id"],
            "redirect_uri": redirect_uri,
            "scope": config.get("scope") or "openid profile email",
            "state": state or secrets.token_urlsafe(32),
        }
        return f"{endpoints['authorization']}?{urlencode(params)}"

    async def _exchange_code(self, config: ProviderConfig, code: str, redirect_uri: str) -> dict:
        endpoints = await self._endpoints(config)
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": config["client_id"],
            "client_secret": config["client_secret"],
        }
        async with self._client(config) as client:
            response = await client.post(
                endpoints["token"],
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        if response.status_code != 200:
            logger.error(f"OIDC token exchange failed: {response.status_code} {response.text}")
            raise UpstreamError("Token exchange failed", status_code=response.status_code)
        return response.json()

    async def _get_userinfo(self, config: ProviderConfig, access_token: str) -> dict:
        endpoints = await self._endpoints(config)
        async with self._client(config) as client:
            response = await client.get(
                endpoints["userinfo"],
                headers={"Authorization": f"Bearer {access_token}"},
            )
        if response.status_code != 200:
            logger.error(f"OIDC userinfo request failed: {response.status_code}")
            raise UpstreamError("Failed to get user info", status_code=response.status_code)
        return response.json()

    async def handle_callback(self, config: ProviderConfig, code: str, redirect_uri: str) -> AuthResult:
        """Exchange the authorization code and open a broker session.

        Upstream failures are logged in detail and reported to the caller as
        a generic login failure.
        """
        try:
            tokens = await self._exchange_code(config, code, redirect_uri)
            userinfo = await self._get_userinfo(config, tokens["access_token"])
            normalized = normalize_user_data(userinfo)
        except (httpx.HTTPError, UpstreamError, KeyError, ValueError) as e:
            logger.warning(f"{self.provider_id} callback failed: {e}")
            return AuthResult.failure(GENERIC_LOGIN_FAILURE)

        try:
            user, created = await self.user_store.upsert_external_user(normalized, self.provider_id)
        except SQLAlchemyError as e:
            logger.error(f"{self.provider_id} user upsert failed for {normalized['email']}: {e}")
            return AuthResult.failure(GENERIC_LOGIN_FAILURE)

        if not user.is_active:
            logger.warning(f"{self.provider_id} login for deactivated user {user.email} rejected")
            return AuthResult.failure(GENERIC_LOGIN_FAILURE)

        await self.user_store.touch_last_login(user.id)
        token = self.tokens.issue(self._session_claims(user, self.provider_id))
        logger.info(f"{self.provider_id} login: {user.email} (new={created})")

        return AuthResult(success=True, user=user.to_public_dict(), session_token=token)

    async def verify_session(self, config: ProviderConfig, token: str) -> Optional[Session]:
        session = await self._verify_token(token)
        if session is None:
            return None
        return await self._check_local_user(session)


class AuthentikAuthProvider(OIDCAuthProvider):
    """Authentik OIDC provider.

    AUTHENTIK_ISSUER may carry the application slug
    (https://auth.example.com/application/o/my-app/); endpoints are shared
    by all applications on the host.
    """

    provider_id = "authentik"

    async def _endpoints(self, config: ProviderConfig) -> dict[str, str]:
        parsed = urlparse(config["issuer"])
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        return {
            "authorization": f"{base_url}/application/o/authorize/",
            "token": f"{base_url}/application/o/token/",
            "userinfo": f"{base_url}/application/o/userinfo/",
        }
