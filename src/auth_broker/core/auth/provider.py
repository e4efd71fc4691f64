"""Abstract authentication provider interface.

This module defines the contract that all authentication providers must implement.
Which optional operations a provider offers is declared by its capability flags
in the provider definition table; the registry dispatches by method name and
fails loudly when a provider lacks the requested method.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from auth_broker.config.settings import Settings
from auth_broker.domain.models.auth import Session
from auth_broker.infrastructure.auth.token_codec import TokenService
from auth_broker.infrastructure.auth.user_store import UserStore

logger = logging.getLogger(__name__)

ProviderConfig = Mapping[str, Any]


@dataclass
class ProviderContext:
    """Collaborators shared by every provider instance

    Attributes:
        settings: Application settings
        user_store: Local user/role/activity store
        tokens: Session token issuer and verifier chain
        redis: Optional Redis client for provider-side state
        http_transport: Optional httpx transport for outbound calls
    """
    settings: Settings
    user_store: UserStore
    tokens: TokenService
    redis: Any = None
    http_transport: Optional[httpx.AsyncBaseTransport] = None


class AuthProvider(ABC):
    """Abstract interface for authentication providers.

    Every operation receives the resolved provider configuration first, so a
    provider instance holds no per-deployment secrets of its own.

    Operations beyond the two required here are optional and declared by
    capability:
        get_authorization_url(config, redirect_uri, state)   supports_callback
        handle_callback(config, code, redirect_uri)           supports_callback
        authenticate(config, credentials)                     supports_credentials
        sync_user(config, user_id) / sync_all_users(config)   supports_sync
        handle_webhook(config, payload, signature, ...)       webhook provider
    """

    provider_id: str = "unknown"

    def __init__(self, context: ProviderContext):
        self.context = context

    @property
    def user_store(self) -> UserStore:
        return self.context.user_store

    @property
    def tokens(self) -> TokenService:
        return self.context.tokens

    @abstractmethod
    async def verify_session(self, config: ProviderConfig, token: str) -> Optional[Session]:
        """Verify a session token and return the session.

        Args:
            config: Resolved provider configuration
            token: Session token from cookie or Authorization header

        Returns:
            Session if the token is valid, None otherwise
        """
        pass

    async def logout(self, config: ProviderConfig, token: Optional[str] = None) -> dict:
        """Revoke the session token server-side.

        Providers with an upstream session override this and call super().
        """
        if token:
            revoked = await self.tokens.revoke(token)
            logger.info(f"Logout on {self.provider_id} (revoked={revoked})")
        return {"success": True}

    async def _verify_token(self, token: str) -> Optional[Session]:
        """Run the verifier chain; detailed reasons go to the log only"""
        result = await self.tokens.verify(token)
        if not result.is_verified:
            logger.debug(f"Session rejected on {self.provider_id}: {result.status.value} ({result.reason})")
            return None
        return result.session

    async def _check_local_user(self, session: Session) -> Optional[Session]:
        """Reject sessions whose local account has since been deactivated"""
        if not session.local_user_id:
            return session
        user = await self.user_store.get_user(session.local_user_id)
        if user is None or not user.is_active:
            logger.warning(f"Session for inactive or missing user {session.local_user_id} rejected")
            return None
        return session

    def _session_claims(self, user, provider: str, **extra) -> dict:
        claims = {
            "sub": user.external_id or user.id,
            "user_id": user.id,
            "email": user.email,
            "name": user.name,
            "is_admin": bool(user.is_admin),
            "provider": provider,
        }
        claims.update({k: v for k, v in extra.items() if v is not None})
        return claims
