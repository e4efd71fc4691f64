"""
SQLAlchemy declarative base for broker models.

Models use string primary keys so the same schema runs on PostgreSQL
(asyncpg) in production and SQLite (aiosqlite) in tests.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.orm import DeclarativeBase


def utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all broker SQLAlchemy models."""

    pass
