"""Local authentication provider (email/password).

Default provider for self-hosted deployments. Passwords are hashed with
bcrypt; sessions are signed tokens that are re-checked against the user
table on every verification, so deactivating an account ends its sessions
before their tokens expire.
"""

import logging
from typing import Any, Optional

import bcrypt

from auth_broker.config.settings import DEFAULT_SESSION_SECRET
from auth_broker.core.auth.provider import AuthProvider, ProviderConfig, ProviderContext
from auth_broker.domain.models.auth import AuthResult, Session
from auth_broker.infrastructure.auth.user_store import EmailAlreadyRegisteredError

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt ignores everything past 72 bytes

INVALID_CREDENTIALS = "Invalid email or password"


def validate_password(password: Any) -> Optional[str]:
    """Return an error message, or None if the password is acceptable"""
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes long"
    return None


class LocalAuthProvider(AuthProvider):
    """Local email/password authentication.

    Features:
    - Login with email/password (bcrypt, cost factor from BCRYPT_ROUNDS)
    - Account creation; the first account becomes admin
    - Password change (verifies the current password) and admin reset
    - Session verification that re-checks the account is still active

    Configuration:
        AUTH_PROVIDER=local_auth (default)
        SESSION_SECRET=<your-secret-key>
        LOCAL_TOKEN_FORMAT=jwt (default) or compact
    """

    provider_id = "local_auth"
    session_provider_name = "local"

    def __init__(self, context: ProviderContext):
        super().__init__(context)
        self.rounds = context.settings.bcrypt_rounds
        self.token_format = context.settings.local_token_format
        # Checked against when the account does not exist, so both failure paths cost the same
        self._dummy_hash = bcrypt.hashpw(b"dummy-password-for-timing", bcrypt.gensalt(rounds=self.rounds))

        if context.settings.session_secret == DEFAULT_SESSION_SECRET:
            logger.warning(
                "Using default SESSION_SECRET! "
                "Set SESSION_SECRET environment variable in production!"
            )

    def hash_password(self, password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    @staticmethod
    def _check_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    async def authenticate(self, config: ProviderConfig, credentials: dict) -> AuthResult:
        """Authenticate with email (or username) and password.

        Unknown accounts, inactive accounts, accounts without a password and
        wrong passwords all return the same error.
        """
        email = (credentials.get("email") or credentials.get("username") or "").strip()
        password = credentials.get("password") or ""
        if not email or not password:
            return AuthResult.failure("Email and password are required")

        user = await self.user_store.get_active_user_by_email(email)
        if user is None or not user.password_hash:
            self._check_password(password, self._dummy_hash.decode("utf-8"))
            logger.warning(f"Login failed: no active local account (email: {email})")
            return AuthResult.failure(INVALID_CREDENTIALS)

        if not self._check_password(password, user.password_hash):
            logger.warning(f"Login failed: invalid password (email: {email})")
            return AuthResult.failure(INVALID_CREDENTIALS)

        await self.user_store.touch_last_login(user.id)
        token = self.tokens.issue(
            self._session_claims(user, self.session_provider_name) | {"sub": user.id},
            token_format=self.token_format,
        )
        logger.info(f"User authenticated successfully: {user.email} ({user.id})")

        return AuthResult(
            success=True,
            user={
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "avatar": user.avatar,
                "is_admin": user.is_admin,
            },
            session_token=token,
        )

    async def verify_session(self, config: ProviderConfig, token: str) -> Optional[Session]:
        session = await self._verify_token(token)
        if session is None:
            return None
        if not session.local_user_id:
            logger.warning("Local session token without user_id rejected")
            return None
        return await self._check_local_user(session)

    async def create_user(self, config: ProviderConfig, data: dict) -> dict:
        email = (data.get("email") or "").strip().lower()
        password = data.get("password")
        if not email or not password:
            return {"success": False, "error": "Email and password are required"}

        error = validate_password(password)
        if error:
            return {"success": False, "error": error}

        try:
            user = await self.user_store.create_local_user(
                email=email,
                password_hash=self.hash_password(password),
                name=data.get("name"),
            )
        except EmailAlreadyRegisteredError:
            return {"success": False, "error": "User already exists"}

        await self.user_store.log_activity("user_created", entity_id=user.id, user_id=user.id)
        return {"success": True, "user": user.to_public_dict()}

    async def change_password(
        self,
        config: ProviderConfig,
        user_id: str,
        current_password: str,
        new_password: str,
    ) -> dict:
        error = validate_password(new_password)
        if error:
            return {"success": False, "error": error}

        user = await self.user_store.get_user(user_id)
        if user is None:
            return {"success": False, "error": "User not found"}

        if not user.password_hash or not self._check_password(current_password or "", user.password_hash):
            logger.warning(f"Password change rejected: current password incorrect ({user_id})")
            return {"success": False, "error": "Current password is incorrect"}

        await self.user_store.update_password(user_id, self.hash_password(new_password))
        await self.user_store.log_activity("password_changed", entity_id=user_id, user_id=user_id)
        return {"success": True, "message": "Password changed successfully"}

    async def reset_password(self, config: ProviderConfig, email: str, new_password: str) -> dict:
        error = validate_password(new_password)
        if error:
            return {"success": False, "error": error}

        user = await self.user_store.get_active_user_by_email(email or "")
        if user is None:
            return {"success": False, "error": "User not found"}

        await self.user_store.update_password(user.id, self.hash_password(new_password))
        await self.user_store.log_activity("password_reset", entity_id=user.id, user_id=user.id)
        return {"success": True, "message": "Password reset successfully", "user_id": user.id}
