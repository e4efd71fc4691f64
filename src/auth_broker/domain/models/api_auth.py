"""Authentication API Models

Purpose: Request/response models for the broker's HTTP endpoints

Key Components:
- CredentialsRequest: email/username + password login
- RegisterRequest / ChangePasswordRequest / ResetPasswordRequest: local accounts
- AuthResponse: {success, user?, session_token?, error?}
- SessionResponse / ProviderConfigResponse: session and provider introspection
- SyncRequest: manual user sync trigger
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CredentialsRequest(BaseModel):
    """Request model for credential login

    Either email or username identifies the account.
    """

    email: Optional[str] = Field(None, description="Email address", examples=["jane@example.com"])
    username: Optional[str] = Field(None, description="Username (alternative to email)")
    password: str = Field(..., min_length=1, description="Password")

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.email or self.username):
            raise ValueError("Either email or username is required")
        return self

    def to_credentials(self) -> dict:
        return self.model_dump(exclude_none=True)

    model_config = {
        "json_schema_extra": {
            "examples": [{"email": "jane@example.com", "password": "correct horse battery"}]
        }
    }


class RegisterRequest(BaseModel):
    """Request model for local account registration"""

    email: str = Field(..., description="Email address", examples=["jane@example.com"])
    password: str = Field(..., description="Password (8-72 bytes)")
    name: Optional[str] = Field(None, max_length=255, description="Display name", examples=["Jane Doe"])

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        """Validate email format"""
        if not re.match(EMAIL_PATTERN, v):
            raise ValueError("Invalid email format")
        return v.lower()


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., description="Current password")
    new_password: str = Field(..., description="New password (8-72 bytes)")


class ResetPasswordRequest(BaseModel):
    """Admin password reset for a local account"""

    email: str = Field(..., description="Email of the account to reset")
    new_password: str = Field(..., description="New password (8-72 bytes)")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if not re.match(EMAIL_PATTERN, v):
            raise ValueError("Invalid email format")
        return v.lower()


class SyncRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="External user id; omit to sync every user")


class AuthResponse(BaseModel):
    """Outcome of a login, registration or password operation"""

    success: bool
    user: Optional[dict[str, Any]] = None
    session_token: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class SessionResponse(BaseModel):
    """Current session"""

    authenticated: bool = True
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    auth_type: str
    local_user_id: Optional[str] = None
    is_admin: bool = False
    session_id: Optional[str] = None
    issued_at: Optional[str] = None
    expires_at: Optional[str] = None


class ProviderConfigResponse(BaseModel):
    """Active provider and what it can do"""

    provider: str
    name: str
    category: str
    capabilities: dict[str, bool]
    registration_enabled: bool = False


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error code", examples=["invalid_request"])
    message: Optional[str] = Field(None, description="Human-readable description")
