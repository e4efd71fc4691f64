"""
SQLAlchemy models for the auth broker.
"""

from auth_broker.models.audit import ActivityLog
from auth_broker.models.base import Base
from auth_broker.models.role import Role, UserRole
from auth_broker.models.user import User

__all__ = [
    "Base",
    "User",
    "Role",
    "UserRole",
    "ActivityLog",
]
