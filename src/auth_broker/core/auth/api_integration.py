"""REST API integration provider.

Authenticates credentials against an external user directory and polls it
for user records. Every user the directory returns is upserted into the
local store; the broker session token carries the directory's access token
so the session can be re-checked upstream.

Configuration:
    AUTH_PROVIDER=api_integration
    API_BASE_URL=https://directory.example.com
    API_KEY=<integration key>
    API_USER_ENDPOINT=/api/users (default)
    API_SYNC_ENDPOINT=/api/users/sync (default)
    API_VERIFY_ENDPOINT, API_LOGOUT_ENDPOINT (optional)
    API_TIMEOUT=5 (seconds)
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from auth_broker.core.auth.errors import UpstreamError
from auth_broker.core.auth.provider import AuthProvider, ProviderConfig
from auth_broker.domain.models.auth import AuthResult, Session, SyncStats
from auth_broker.domain.services.user_sync import batch_sync_users, normalize_user_data, sync_user_to_store
from auth_broker.infrastructure.http.client import ApiClient

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/auth/login"
BULK_TIMEOUT_FACTOR = 5


class ApiIntegrationProvider(AuthProvider):
    """Credential login and user sync through an external REST API"""

    provider_id = "api_integration"

    def _api(self, config: ProviderConfig, timeout_factor: float = 1) -> ApiClient:
        return ApiClient(
            config["base_url"],
            config.get("api_key"),
            timeout=float(config.get("timeout") or 5) * timeout_factor,
            transport=self.context.http_transport,
        )

    async def authenticate(self, config: ProviderConfig, credentials: dict) -> AuthResult:
        try:
            response = await self._api(config).post(LOGIN_PATH, json=dict(credentials))
        except UpstreamError as e:
            logger.error(f"API authentication unavailable: {e}")
            return AuthResult.failure("Authentication failed")

        if not response.success:
            detail = response.data.get("message") if isinstance(response.data, dict) else None
            logger.warning(f"API authentication rejected ({response.status}): {detail}")
            if response.status in (400, 401, 403):
                return AuthResult.failure("Invalid email or password")
            return AuthResult.failure("Authentication failed")

        result = response.data if isinstance(response.data, dict) else {}
        try:
            normalized = normalize_user_data(result.get("user"))
            user, _ = await self.user_store.upsert_external_user(normalized, self.provider_id)
        except (ValueError, SQLAlchemyError) as e:
            logger.error(f"API authentication returned unusable user record: {e}")
            return AuthResult.failure("Authentication failed")

        if normalized["roles"]:
            await self.user_store.sync_user_roles(user.id, normalized["roles"], source="API")

        await self.user_store.touch_last_login(user.id)
        token = self.tokens.issue(
            self._session_claims(user, self.provider_id, upstream_token=result.get("access_token"))
        )
        return AuthResult(success=True, user=user.to_public_dict(), session_token=token)

    async def verify_session(self, config: ProviderConfig, token: str) -> Optional[Session]:
        session = await self._verify_token(token)
        if session is None:
            return None

        verify_endpoint = config.get("verify_endpoint")
        if verify_endpoint:
            headers = {"Authorization": f"Bearer {session.upstream_token}"} if session.upstream_token else None
            try:
                response = await self._api(config).get(verify_endpoint, headers=headers)
            except UpstreamError as e:
                logger.warning(f"Upstream session check unavailable: {e}")
                return None
            if not response.success:
                logger.info(f"Upstream session no longer valid for {session.subject}")
                return None

        return await self._check_local_user(session)

    async def sync_user(self, config: ProviderConfig, user_id: str) -> dict:
        """Fetch one user from the directory and upsert it

        Raises:
            UpstreamError: Directory unreachable or returned non-2xx
        """
        response = await self._api(config).get(f"{config['user_endpoint']}/{user_id}")
        if not response.success:
            raise UpstreamError(f"Failed to fetch user {user_id}: {response.status}", status_code=response.status)

        user, created = await sync_user_to_store(self.user_store, response.data, self.provider_id, source="API")
        return {"success": True, "action": "created" if created else "updated", "user": user.to_public_dict()}

    async def sync_all_users(self, config: ProviderConfig) -> SyncStats:
        response = await self._api(config, timeout_factor=BULK_TIMEOUT_FACTOR).get(config["sync_endpoint"])
        if not response.success:
            raise UpstreamError(f"Failed to sync users: {response.status}", status_code=response.status)

        data = response.data
        users = data.get("users") if isinstance(data, dict) else data
        if not isinstance(users, list):
            raise UpstreamError("Sync endpoint returned no user list")

        stats = await batch_sync_users(self.user_store, users, self.provider_id, source="API")
        await self.user_store.log_activity(
            "api_sync_all",
            details=stats.to_dict(),
            status="success" if stats.errors == 0 else "partial",
            entity_type="sync",
        )
        return stats

    async def logout(self, config: ProviderConfig, token: Optional[str] = None) -> dict:
        upstream_token = None
        logout_endpoint = config.get("logout_endpoint")
        if token and logout_endpoint:
            verification = await self.tokens.verify(token)
            if verification.is_verified:
                upstream_token = verification.session.upstream_token

        # Local revocation first so an upstream failure cannot leave the session alive
        result = await super().logout(config, token)
        if upstream_token:
            await self._api(config).post(logout_endpoint, headers={"Authorization": f"Bearer {upstream_token}"})
        return result
