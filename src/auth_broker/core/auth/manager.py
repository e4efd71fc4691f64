"""Authentication manager.

Facade over the provider registry for the active provider: login,
callback, credential, session, logout, sync and webhook operations, with a
short-lived session-verification cache and a configuration-validation
cache in front of the providers.

Masking policy:
- get_session: verification errors become None
- logout: provider errors become {"success": True}
- authenticate / handle_callback: the provider's AuthResult is returned as is
- everything else propagates
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

from auth_broker.core.auth.definitions import PROVIDER_CATEGORIES, ProviderCapabilities, ProviderDefinition
from auth_broker.core.auth.errors import CapabilityMismatchError, UnknownProviderError
from auth_broker.core.auth.registry import ProviderRegistry
from auth_broker.domain.models.auth import AuthResult, Session, SyncStats, ValidationResult
from auth_broker.infrastructure.cache.ttl_cache import BoundedTTLCache, SessionCache

logger = logging.getLogger(__name__)

LOCAL_PROVIDER_ID = "local_auth"
WEBHOOK_PROVIDER_ID = "webhook_integration"

DEFAULT_SYNC_INTERVAL_SECONDS = 300

# Config keys whose values never leave the process
SECRET_MARKERS = ("secret", "key", "password", "token")


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _config_digest(config: Mapping[str, Any]) -> str:
    encoded = json.dumps(dict(config), sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def redact_config(config: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of config with secret-looking values masked"""
    redacted = {}
    for key, value in config.items():
        if value and any(marker in key.lower() for marker in SECRET_MARKERS):
            redacted[key] = "********"
        else:
            redacted[key] = value
    return redacted


class AuthManager:
    """Operations on the active authentication provider

    Args:
        registry: Provider registry
        session_cache: Session-verification cache
        validation_cache: Configuration-validation cache
        default_provider: Provider used when initialize() names none
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        session_cache: SessionCache,
        validation_cache: BoundedTTLCache,
        default_provider: str = LOCAL_PROVIDER_ID,
    ):
        self.registry = registry
        self.session_cache = session_cache
        self.validation_cache = validation_cache
        self.default_provider = default_provider

        self.provider_id: Optional[str] = None
        self.config: dict[str, Any] = {}
        self.user_sync_enabled = False
        self._sync_task: Optional[asyncio.Task] = None

    # Setup

    async def initialize(
        self,
        provider_id: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
        enable_user_sync: bool = False,
        sync_interval: Optional[float] = None,
    ) -> ValidationResult:
        """Select and configure the active provider.

        Explicit config is merged over the environment-resolved config.
        Periodic sync starts only when the provider supports sync and it was
        requested. Safe to call again; a running sync task is replaced.

        Raises:
            UnknownProviderError: provider_id is not in the definition table
        """
        provider_id = provider_id or self.default_provider
        definition = self._definition(provider_id)

        self.provider_id = provider_id
        self.config = {**self.registry.get_provider_config(provider_id), **(config or {})}

        await self.stop_user_sync()
        requested = bool(enable_user_sync or self.config.get("enable_user_sync"))
        self.user_sync_enabled = requested and definition.capabilities.supports_sync
        if self.user_sync_enabled:
            interval = sync_interval or self.config.get("sync_interval") or DEFAULT_SYNC_INTERVAL_SECONDS
            self.start_user_sync(float(interval))
        elif requested:
            logger.warning(f"User sync requested but {provider_id} does not support sync")

        result = self.validate_configuration()
        if result.valid:
            logger.info(f"Auth manager initialized with provider {provider_id}")
        else:
            logger.error(f"Provider {provider_id} configuration invalid: {result.message}")
        return result

    def validate_configuration(self) -> ValidationResult:
        """Validate the active provider's config (cached by provider + config hash)"""
        provider_id = self._require_provider()
        cache_key = f"{provider_id}:{_config_digest(self.config)}"
        cached = self.validation_cache.get(cache_key)
        if cached is not None:
            return cached

        result = self.registry.validate_provider(provider_id, self.config)
        self.validation_cache.set(cache_key, result)
        return result

    async def switch_provider(
        self,
        provider_id: str,
        config: Optional[Mapping[str, Any]] = None,
        enable_user_sync: bool = False,
        sync_interval: Optional[float] = None,
    ) -> ValidationResult:
        await self.stop_user_sync()
        await self.clear_caches()
        logger.info(f"Switching auth provider: {self.provider_id} -> {provider_id}")
        return await self.initialize(provider_id, config, enable_user_sync, sync_interval)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._definition().capabilities

    def _require_provider(self) -> str:
        if self.provider_id is None:
            raise RuntimeError("Auth manager not initialized. Call initialize() first.")
        return self.provider_id

    def _definition(self, provider_id: Optional[str] = None) -> ProviderDefinition:
        provider_id = provider_id or self._require_provider()
        definition = self.registry.get_provider_definition(provider_id)
        if definition is None:
            raise UnknownProviderError(provider_id)
        return definition

    async def _execute(self, method: str, *args, **kwargs) -> Any:
        return await self.registry.execute_provider_method(self._require_provider(), method, self.config, *args, **kwargs)

    # Login

    async def get_authorization_url(self, redirect_uri: str, state: Optional[str] = None) -> str:
        """Authorization URL of the active provider

        Local auth has no external redirect and answers its own login page.

        Raises:
            CapabilityMismatchError: Provider does not support callbacks
        """
        definition = self._definition()
        if not definition.capabilities.supports_callback:
            if definition.category == PROVIDER_CATEGORIES.LOCAL:
                return f"/login?redirect={quote(redirect_uri, safe='')}"
            raise CapabilityMismatchError(f"Provider {definition.id} does not support authorization URL")

        return await self._execute("get_authorization_url", redirect_uri, state)

    async def handle_callback(self, code: str, state: Optional[str], redirect_uri: str) -> AuthResult:
        """Delegate the authorization-code callback

        The caller checks state against the value it issued; nothing is
        stored here.
        """
        definition = self._definition()
        if not definition.capabilities.supports_callback:
            raise CapabilityMismatchError(f"Provider {definition.id} does not support callbacks")

        return await self._execute("handle_callback", code, redirect_uri)

    async def authenticate(self, credentials: Mapping[str, Any]) -> AuthResult:
        definition = self._definition()
        if not definition.capabilities.supports_credentials:
            raise CapabilityMismatchError(f"Provider {definition.id} does not support credential authentication")

        return await self._execute("authenticate", dict(credentials))

    # Sessions

    async def get_session(self, token: Optional[str]) -> Optional[Session]:
        """Verify a session token

        Only successful verifications are cached. Errors are logged and
        reported as no session.
        """
        if not token:
            return None

        provider_id = self._require_provider()
        cache_key = f"{provider_id}:{_token_digest(token)}"
        cached = await self.session_cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            session = await self._execute("verify_session", token)
        except Exception as e:
            logger.error(f"Session verification failed: {e}")
            return None

        if session is not None:
            await self.session_cache.set(cache_key, session)
        return session

    async def invalidate_user_sessions(self, local_user_id: str) -> int:
        evicted = await self.session_cache.invalidate_user(local_user_id)
        logger.info(f"Evicted {evicted} cached sessions of user {local_user_id}")
        return evicted

    async def logout(self, token: Optional[str] = None) -> dict:
        """Logout never fails from the caller's point of view"""
        provider_id = self._require_provider()
        if token:
            await self.session_cache.delete(f"{provider_id}:{_token_digest(token)}")
        try:
            return await self._execute("logout", token)
        except Exception as e:
            logger.error(f"Logout failed on {provider_id}: {e}")
            return {"success": True}

    # Sync

    async def sync_user(self, user_id: str) -> Optional[dict]:
        """Pull one user from the provider; None for providers that are pushed to"""
        definition = self._definition()
        if not definition.capabilities.supports_sync or definition.category == PROVIDER_CATEGORIES.WEBHOOK:
            return None
        result = await self._execute("sync_user", user_id)
        await self._evict_inactive(result)
        return result

    async def sync_all_users(self) -> Optional[SyncStats]:
        definition = self._definition()
        if not definition.capabilities.supports_sync or definition.category == PROVIDER_CATEGORIES.WEBHOOK:
            return None

        try:
            stats = await self._execute("sync_all_users")
        except Exception as e:
            logger.error(f"Failed to sync all users: {e}")
            raise

        for user_id in stats.deactivated:
            await self.invalidate_user_sessions(user_id)
        return stats

    def start_user_sync(self, interval: float) -> None:
        """Run sync_all_users every interval seconds in one background task"""
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        self._sync_task = asyncio.create_task(self._sync_loop(interval))
        logger.info(f"Periodic user sync started (every {interval}s)")

    async def _sync_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                stats = await self.sync_all_users()
                if stats is not None:
                    logger.info(f"Periodic user sync: {stats.to_dict()}")
            except Exception as e:
                logger.error(f"User sync error: {e}")

    async def stop_user_sync(self) -> None:
        task, self._sync_task = self._sync_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic user sync stopped")

    @property
    def sync_running(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    # Webhooks

    def _require_webhook(self) -> None:
        if self._require_provider() != WEBHOOK_PROVIDER_ID:
            raise CapabilityMismatchError("Webhook handling is only available for webhook integration")

    async def _evict_inactive(self, result: Optional[dict]) -> None:
        """Drop cached sessions of users a sync or webhook left inactive"""
        if not isinstance(result, dict):
            return
        user = result.get("user")
        if isinstance(user, dict) and user.get("id") and (
            result.get("action") == "deleted" or user.get("is_active") is False
        ):
            await self.invalidate_user_sessions(user["id"])
        for user_id in result.get("deactivated") or []:
            await self.invalidate_user_sessions(user_id)

    async def handle_webhook(self, payload: Any, signature: Optional[str] = None, delivery_id: Optional[str] = None) -> dict:
        """Process a webhook delivery; deleted or deactivated users lose their cached sessions

        Raises:
            CapabilityMismatchError: Active provider is not the webhook provider
            SignatureVerificationError: Signature check failed
        """
        self._require_webhook()
        result = await self._execute("handle_webhook", payload, signature, delivery_id)
        await self._evict_inactive(result)
        return result

    async def verify_webhook_challenge(self, verify_token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        self._require_webhook()
        provider = await self.registry.load_provider(WEBHOOK_PROVIDER_ID)
        return provider.verify_challenge(self.config, verify_token, challenge)

    # Local accounts

    def _require_local(self) -> None:
        if self._require_provider() != LOCAL_PROVIDER_ID:
            raise CapabilityMismatchError(f"Local accounts are not managed by provider {self.provider_id}")

    async def create_user(self, data: Mapping[str, Any]) -> dict:
        self._require_local()
        return await self._execute("create_user", dict(data))

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> dict:
        self._require_local()
        result = await self._execute("change_password", user_id, current_password, new_password)
        if result.get("success"):
            await self.invalidate_user_sessions(user_id)
        return result

    async def reset_password(self, email: str, new_password: str) -> dict:
        self._require_local()
        result = await self._execute("reset_password", email, new_password)
        if result.get("success") and result.get("user_id"):
            await self.invalidate_user_sessions(result["user_id"])
        return result

    # Introspection

    async def clear_caches(self) -> None:
        await self.session_cache.clear()
        self.validation_cache.clear()

    def get_provider_info(self) -> dict:
        definition = self._definition()
        return {
            "provider": definition.id,
            "name": definition.name,
            "description": definition.description,
            "category": definition.category,
            "config": redact_config(self.config),
            "user_sync_enabled": self.user_sync_enabled,
            "capabilities": definition.capabilities.to_dict(),
            "validation": self.validate_configuration().to_dict(),
        }

    def get_available_providers(self) -> list[dict]:
        return [
            {
                "id": definition.id,
                "name": definition.name,
                "description": definition.description,
                "category": definition.category,
                "capabilities": definition.capabilities.to_dict(),
            }
            for definition in self.registry.get_all_provider_definitions().values()
        ]
