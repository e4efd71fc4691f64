"""User synchronization helpers

Shared by the API polling and webhook providers: turns provider-specific
user payloads into one shape and writes them through the user store.
"""

import logging
from typing import Any, Optional

from auth_broker.domain.models.auth import SyncStats
from auth_broker.infrastructure.auth.user_store import UserStore

logger = logging.getLogger(__name__)


def _first(data: dict, *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def extract_role_names(raw_roles) -> list[str]:
    """Accept ["editor"] or [{"name": "editor"}, ...]"""
    names = []
    for role in raw_roles or []:
        if isinstance(role, dict):
            role = role.get("name")
        if isinstance(role, str) and role.strip():
            names.append(role.strip())
    return names


def normalize_user_data(user_data: Any) -> dict[str, Any]:
    """Normalize a user payload from an external system

    Args:
        user_data: Raw payload as sent by the provider

    Returns:
        Dict with external_id, email, name, avatar, is_active, roles and
        external_data (the provider-specific extras)

    Raises:
        ValueError: Payload is not an object, or has no id or email
    """
    if not isinstance(user_data, dict):
        raise ValueError("User data must be an object")

    external_id = _first(user_data, "id", "user_id", "external_id", "sub")
    if external_id is None:
        raise ValueError("User data missing required ID field")

    email = _first(user_data, "email")
    if not isinstance(email, str) or "@" not in email:
        raise ValueError("User data missing required email field")

    roles = extract_role_names(user_data.get("roles"))
    return {
        "external_id": str(external_id),
        "email": email.strip().lower(),
        "name": _first(user_data, "name", "display_name", "preferred_username", "username"),
        "avatar": _first(user_data, "avatar", "profile_picture", "picture"),
        "is_active": user_data.get("is_active") is not False and user_data.get("active") is not False,
        "roles": roles,
        "external_data": {
            "username": user_data.get("username"),
            "roles": roles,
            "permissions": user_data.get("permissions") or [],
            "groups": user_data.get("groups") or [],
            "metadata": user_data.get("metadata") or {},
            "created_at": user_data.get("created_at"),
            "updated_at": user_data.get("updated_at"),
        },
    }


async def sync_user_to_store(
    store: UserStore,
    user_data: Any,
    provider: str,
    source: str = "sync",
):
    """Normalize and upsert one user, replacing roles when the payload has any

    Returns:
        Tuple of (user, created)
    """
    normalized = normalize_user_data(user_data)
    user, created = await store.upsert_external_user(normalized, provider)
    if normalized["roles"]:
        await store.sync_user_roles(user.id, normalized["roles"], source=source)
    return user, created


async def batch_sync_users(
    store: UserStore,
    users: list[Any],
    provider: str,
    source: str = "sync",
) -> SyncStats:
    """Sync a list of users; one bad record never aborts the batch"""
    stats = SyncStats(total=len(users))

    for user_data in users:
        try:
            user, created = await sync_user_to_store(store, user_data, provider, source=source)
        except Exception as e:
            ident = user_data.get("id") or user_data.get("email") if isinstance(user_data, dict) else None
            logger.warning(f"Failed to sync user {ident}: {e}")
            stats.errors += 1
            stats.failures.append(f"{ident}: {e}")
            continue

        if not user.is_active:
            stats.deactivated.append(user.id)
        if created:
            stats.created += 1
        else:
            stats.updated += 1

    logger.info(
        f"Batch sync for {provider}: total={stats.total} created={stats.created} "
        f"updated={stats.updated} errors={stats.errors}"
    )
    return stats
