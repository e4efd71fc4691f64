"""Authentication Data Models

Purpose: Define data structures shared by providers, the manager and routes

Key Components:
- Session: the logical session carried by a session token
- AuthResult: outcome of a credential or callback login
- ValidationResult: outcome of provider configuration validation
- SyncStats: counters reported by a bulk user sync
- TokenStatus / Verification: tagged result of one token verifier
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def to_json_compatible(value):
    """Convert datetime to JSON-compatible ISO format string"""
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def from_timestamp(value) -> Optional[datetime]:
    """Convert a numeric JWT claim to an aware UTC datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenStatus(Enum):
    """Token verification status"""
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"
    REVOKED = "revoked"
    UNRECOGNIZED = "unrecognized"  # token is not in this verifier's format


@dataclass
class Session:
    """Authenticated session decoded from a session token

    Attributes:
        subject: Provider-side subject (local user id for local accounts)
        name: Display name
        email: User email address
        auth_type: Provider that authenticated the session
        local_user_id: Primary key of the local user row, when one exists
        is_admin: Administrative flag at issuance time
        issued_at: Token issue time
        expires_at: Token expiry
        session_id: Unique token id, used for revocation
        upstream_token: Access token of the external system (API integration)
    """
    subject: str
    email: Optional[str]
    name: Optional[str]
    auth_type: str
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]
    session_id: Optional[str] = None
    local_user_id: Optional[str] = None
    is_admin: bool = False
    upstream_token: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Session":
        return cls(
            subject=str(claims["sub"]),
            email=claims.get("email"),
            name=claims.get("name"),
            auth_type=claims.get("provider", "unknown"),
            issued_at=from_timestamp(claims.get("iat")),
            expires_at=from_timestamp(claims.get("exp")),
            session_id=claims.get("jti"),
            local_user_id=claims.get("user_id"),
            is_admin=bool(claims.get("is_admin", False)),
            upstream_token=claims.get("upstream_token"),
        )

    def to_dict(self, include_upstream: bool = False) -> dict:
        """Convert to dictionary for JSON serialization

        The upstream token is only included for the shared session cache;
        it is never returned to clients.
        """
        data = {
            "subject": self.subject,
            "email": self.email,
            "name": self.name,
            "auth_type": self.auth_type,
            "local_user_id": self.local_user_id,
            "is_admin": self.is_admin,
            "session_id": self.session_id,
            "issued_at": to_json_compatible(self.issued_at),
            "expires_at": to_json_compatible(self.expires_at),
        }
        if include_upstream:
            data["upstream_token"] = self.upstream_token
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Inverse of to_dict, used by the shared session cache"""
        def parse(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            subject=data["subject"],
            email=data.get("email"),
            name=data.get("name"),
            auth_type=data["auth_type"],
            issued_at=parse(data.get("issued_at")),
            expires_at=parse(data.get("expires_at")),
            session_id=data.get("session_id"),
            local_user_id=data.get("local_user_id"),
            is_admin=data.get("is_admin", False),
            upstream_token=data.get("upstream_token"),
        )


@dataclass
class Verification:
    """Tagged result of a single verifier strategy"""
    status: TokenStatus
    session: Optional[Session] = None
    reason: Optional[str] = None

    @classmethod
    def verified(cls, session: Session) -> "Verification":
        return cls(TokenStatus.VALID, session=session)

    @classmethod
    def not_this_format(cls) -> "Verification":
        return cls(TokenStatus.UNRECOGNIZED)

    @classmethod
    def rejected(cls, status: TokenStatus, reason: str) -> "Verification":
        return cls(status, reason=reason)

    @property
    def is_verified(self) -> bool:
        return self.status == TokenStatus.VALID


@dataclass
class AuthResult:
    """Outcome of authenticate / handle_callback

    Either {success: False, error} or {success: True, user, session_token}.
    """
    success: bool
    user: Optional[dict] = None
    session_token: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "AuthResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        return {"success": True, "user": self.user, "session_token": self.session_token}


@dataclass
class ValidationResult:
    valid: bool
    message: str
    capabilities: Optional[dict] = None

    def to_dict(self) -> dict:
        data = {"valid": self.valid, "message": self.message}
        if self.capabilities is not None:
            data["capabilities"] = self.capabilities
        return data


@dataclass
class SyncStats:
    """Counters for a bulk user sync"""
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    failures: list[str] = field(default_factory=list)
    # Local ids of users the sync left inactive
    deactivated: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
        }
