"""Domain models for Auth Broker"""

from auth_broker.domain.models.api_auth import (
    AuthResponse,
    ChangePasswordRequest,
    CredentialsRequest,
    ErrorResponse,
    ProviderConfigResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    SyncRequest,
)
from auth_broker.domain.models.auth import (
    AuthResult,
    Session,
    SyncStats,
    TokenStatus,
    ValidationResult,
    Verification,
    to_json_compatible,
)

__all__ = [
    # Auth models
    "AuthResult",
    "Session",
    "SyncStats",
    "TokenStatus",
    "ValidationResult",
    "Verification",
    "to_json_compatible",
    # API models
    "AuthResponse",
    "ChangePasswordRequest",
    "CredentialsRequest",
    "ErrorResponse",
    "ProviderConfigResponse",
    "RegisterRequest",
    "ResetPasswordRequest",
    "SessionResponse",
    "SyncRequest",
]
