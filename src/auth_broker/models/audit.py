"""
Append-only activity log.

Every webhook event and account change writes one row here, whatever its
outcome.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from auth_broker.models.base import Base, new_id, utc_now


class ActivityLog(Base):
    """Security and sync audit record."""

    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    # Event types: webhook_user.created, login_success, password_changed, ...
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # external user id
    status: Mapped[str] = mapped_column(String(20), default="success", nullable=False)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ActivityLog(action={self.action}, entity_id={self.entity_id}, status={self.status})>"
