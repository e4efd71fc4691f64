"""User Storage System

Purpose: Read and write the user, role and activity-log tables

Every provider goes through this store. Writes coming from external
systems (OIDC callbacks, API polling, webhooks) use a single
INSERT ... ON CONFLICT (external_id) DO UPDATE statement so two concurrent
syncs of the same identity converge on one row instead of racing to create
two.

Key Features:
- Active-user lookup by case-insensitive email
- Local account creation with system roles (first account becomes admin)
- Atomic upsert of external users, linking an existing local account by email
- Soft delete by external id
- Role set replacement with on-the-fly role creation
- Best-effort activity logging
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth_broker.models import ActivityLog, Role, User, UserRole

logger = logging.getLogger(__name__)

SYSTEM_ROLES = {
    "admin": "Administrator",
    "user": "User",
}


class EmailAlreadyRegisteredError(ValueError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _insert_for(session: AsyncSession, model):
    """Dialect-specific insert supporting ON CONFLICT"""
    if session.bind.dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


class UserStore:
    """SQLAlchemy-backed user store

    Args:
        session_factory: async_sessionmaker bound to the broker's engine
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def get_active_user_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where(
                    func.lower(User.email) == email.strip().lower(),
                    User.is_active.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def get_by_external_id(self, external_id: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.external_id == external_id))
            return result.scalar_one_or_none()

    async def count_users(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count()).select_from(User))
            return result.scalar_one()

    async def get_user_roles(self, user_id: str) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Role.name)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id)
                .order_by(Role.name)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    async def create_local_user(
        self,
        email: str,
        password_hash: str,
        name: Optional[str] = None,
        is_admin: Optional[bool] = None,
    ) -> User:
        """Create a local account

        When is_admin is None the first account on an empty store becomes
        admin (initial setup); every other account is a plain user.

        Raises:
            EmailAlreadyRegisteredError: Email already belongs to an account
        """
        email = email.strip().lower()
        if is_admin is None:
            is_admin = await self.count_users() == 0

        async with self.session_factory() as session:
            user = User(
                email=email,
                name=name or email.split("@")[0],
                password_hash=password_hash,
                provider="local",
                is_active=True,
                is_admin=is_admin,
            )
            session.add(user)
            try:
                await session.flush()
                await self._assign_role(session, user.id, "admin" if is_admin else "user", is_system=True)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise EmailAlreadyRegisteredError("Email already registered")

        logger.info(f"Local user created: {email} (admin={is_admin})")
        return user

    async def update_password(self, user_id: str, password_hash: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(password_hash=password_hash, updated_at=_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def set_active(self, user_id: str, is_active: bool) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_active=is_active, updated_at=_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def touch_last_login(self, user_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(update(User).where(User.id == user_id).values(last_login_at=_now()))
            await session.commit()

    # ------------------------------------------------------------------
    # External users
    # ------------------------------------------------------------------

    async def upsert_external_user(self, data: dict[str, Any], provider: str) -> tuple[User, bool]:
        """Insert or update a user keyed by external id

        Args:
            data: Normalized user payload (see normalize_user_data)
            provider: Provider id recorded on the row

        Returns:
            Tuple of (user, created)
        """
        external_id = data["external_id"]
        email = data["email"].strip().lower()
        now = _now()
        values = {
            "email": email,
            "name": data.get("name"),
            "avatar": data.get("avatar"),
            "is_active": data.get("is_active", True),
            "provider": provider,
            "external_data": data.get("external_data"),
            "last_synced_at": now,
            "updated_at": now,
            "deleted_at": None,
        }

        linked_rows = 0
        async with self.session_factory() as session:
            async with session.begin():
                existing_id = (await session.execute(
                    select(User.id).where(User.external_id == external_id)
                )).scalar_one_or_none()

                if existing_id is None:
                    # A row with the same email is linked (local account) or
                    # re-keyed (subject changed upstream) instead of duplicated
                    previous = (await session.execute(
                        select(User.external_id).where(func.lower(User.email) == email)
                    )).first()
                    if previous is not None:
                        linked = await session.execute(
                            update(User)
                            .where(func.lower(User.email) == email)
                            .values(external_id=external_id, **values)
                        )
                        linked_rows = linked.rowcount
                        if previous.external_id:
                            logger.info(f"Re-keyed account {email}: {previous.external_id} -> {external_id}")
                        else:
                            logger.info(f"Linked external id {external_id} to existing account {email}")

                stmt = _insert_for(session, User).values(external_id=external_id, **values)
                stmt = stmt.on_conflict_do_update(index_elements=[User.external_id], set_=values)
                await session.execute(stmt)

            result = await session.execute(select(User).where(User.external_id == external_id))
            user = result.scalar_one()

        return user, existing_id is None and not linked_rows

    async def update_external_user(self, data: dict[str, Any], provider: str) -> Optional[User]:
        """Update an existing synced user; returns None when no row matches"""
        external_id = data["external_id"]
        values = {
            "email": data["email"].strip().lower(),
            "name": data.get("name"),
            "avatar": data.get("avatar"),
            "is_active": data.get("is_active", True),
            "provider": provider,
            "external_data": data.get("external_data"),
            "last_synced_at": _now(),
            "updated_at": _now(),
        }
        async with self.session_factory() as session:
            result = await session.execute(
                update(User).where(User.external_id == external_id).values(**values)
            )
            await session.commit()
            if not result.rowcount:
                return None
            return (await session.execute(select(User).where(User.external_id == external_id))).scalar_one()

    async def soft_delete_by_external_id(self, external_id: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.external_id == external_id))
            user = result.scalar_one_or_none()
            if user is None:
                return None
            user.soft_delete()
            await session.commit()
            logger.info(f"User soft-deleted: {user.email} (external_id={external_id})")
            return user

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def _get_or_create_role(self, session: AsyncSession, name: str, is_system: bool = False, source: str = "sync") -> str:
        stmt = _insert_for(session, Role).values(
            name=name,
            display_name=SYSTEM_ROLES.get(name, name.replace("_", " ").title()),
            description=f"External role from {source}: {name}" if not is_system else None,
            is_system=is_system,
            is_active=True,
        )
        await session.execute(stmt.on_conflict_do_nothing(index_elements=[Role.name]))
        result = await session.execute(select(Role.id).where(Role.name == name))
        return result.scalar_one()

    async def _assign_role(self, session: AsyncSession, user_id: str, role_name: str, is_system: bool = False, source: str = "sync") -> None:
        role_id = await self._get_or_create_role(session, role_name, is_system=is_system, source=source)
        stmt = _insert_for(session, UserRole).values(user_id=user_id, role_id=role_id)
        await session.execute(stmt.on_conflict_do_nothing(index_elements=[UserRole.user_id, UserRole.role_id]))

    async def assign_role(self, user_id: str, role_name: str, is_system: bool = False) -> None:
        """Assign a role; assigning one the user already has is a no-op"""
        async with self.session_factory() as session:
            async with session.begin():
                await self._assign_role(session, user_id, role_name, is_system=is_system)

    async def sync_user_roles(self, user_id: str, role_names: list[str], source: str = "sync") -> list[str]:
        """Replace the user's role set with role_names

        Unknown roles are created on the fly; assigning a role the user
        already has is a no-op.

        Returns:
            Role names assigned to the user after the sync
        """
        wanted = sorted({name.strip() for name in role_names if name and name.strip()})

        async with self.session_factory() as session:
            async with session.begin():
                role_ids = [
                    await self._get_or_create_role(session, name, source=source)
                    for name in wanted
                ]
                await session.execute(
                    delete(UserRole).where(
                        UserRole.user_id == user_id,
                        UserRole.role_id.not_in(role_ids),
                    )
                )
                for role_id in role_ids:
                    stmt = _insert_for(session, UserRole).values(user_id=user_id, role_id=role_id)
                    await session.execute(
                        stmt.on_conflict_do_nothing(index_elements=[UserRole.user_id, UserRole.role_id])
                    )

        return await self.get_user_roles(user_id)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def log_activity(
        self,
        action: str,
        entity_id: Optional[str] = None,
        details: Optional[dict] = None,
        status: str = "success",
        user_id: Optional[str] = None,
        entity_type: str = "user",
    ) -> None:
        """Append an activity record

        Failures are logged and swallowed: auditing must never fail the
        operation being audited.
        """
        try:
            async with self.session_factory() as session:
                session.add(ActivityLog(
                    user_id=user_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=status,
                    details=details,
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write activity log ({action}, {entity_id}): {e}")

    async def list_activity(self, action: Optional[str] = None) -> list[ActivityLog]:
        async with self.session_factory() as session:
            stmt = select(ActivityLog).order_by(ActivityLog.created_at)
            if action:
                stmt = stmt.where(ActivityLog.action == action)
            result = await session.execute(stmt)
            return list(result.scalars().all())
