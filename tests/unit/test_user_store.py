"""Unit tests for UserStore"""

import asyncio

import pytest

from auth_broker.infrastructure.auth.user_store import EmailAlreadyRegisteredError


def external(external_id="ext-1", email="alice@example.com", **extra) -> dict:
    data = {"external_id": external_id, "email": email, "name": "Alice", "is_active": True}
    data.update(extra)
    return data


@pytest.mark.unit
class TestLocalUsers:
    """Test local account storage"""

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self, user_store):
        """Happy path: email lookup ignores case"""
        user = await user_store.create_local_user("alice@example.com", "hash")

        found = await user_store.get_active_user_by_email("ALICE@Example.com")

        assert found.id == user.id

    @pytest.mark.asyncio
    async def test_inactive_user_not_returned(self, user_store):
        """Edge case: deactivated accounts are invisible to login lookups"""
        user = await user_store.create_local_user("alice@example.com", "hash")
        await user_store.set_active(user.id, False)

        assert await user_store.get_active_user_by_email("alice@example.com") is None

    @pytest.mark.asyncio
    async def test_duplicate_email(self, user_store):
        """Bad input: email is unique"""
        await user_store.create_local_user("alice@example.com", "hash")

        with pytest.raises(EmailAlreadyRegisteredError):
            await user_store.create_local_user("Alice@example.com", "hash")

    @pytest.mark.asyncio
    async def test_system_roles_assigned(self, user_store):
        """Happy path: first account is admin, later accounts are users"""
        admin = await user_store.create_local_user("admin@example.com", "hash")
        user = await user_store.create_local_user("bob@example.com", "hash")

        assert await user_store.get_user_roles(admin.id) == ["admin"]
        assert await user_store.get_user_roles(user.id) == ["user"]

    @pytest.mark.asyncio
    async def test_update_password(self, user_store):
        user = await user_store.create_local_user("alice@example.com", "old-hash")

        assert await user_store.update_password(user.id, "new-hash") is True
        assert (await user_store.get_user(user.id)).password_hash == "new-hash"
        assert await user_store.update_password("missing-id", "x") is False


@pytest.mark.unit
class TestExternalUsers:
    """Test upsert of externally managed users"""

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, user_store):
        """Happy path: first upsert creates, second updates in place"""
        user, created = await user_store.upsert_external_user(external(), "oidc_generic")
        again, created_again = await user_store.upsert_external_user(external(name="Alicia"), "oidc_generic")

        assert created is True
        assert created_again is False
        assert again.id == user.id
        assert again.name == "Alicia"
        assert again.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_changed_subject_rekeys_existing_row(self, user_store):
        """Edge case: a new external id for a known email updates that row"""
        user, _ = await user_store.upsert_external_user(external("old-id"), "oidc_generic")

        rekeyed, created = await user_store.upsert_external_user(external("new-id", name="Alicia"), "oidc_generic")

        assert created is False
        assert rekeyed.id == user.id
        assert rekeyed.external_id == "new-id"
        assert rekeyed.name == "Alicia"
        assert await user_store.get_by_external_id("old-id") is None

    @pytest.mark.asyncio
    async def test_concurrent_upserts_converge(self, user_store):
        """Edge case: concurrent syncs of one identity leave exactly one row"""
        results = await asyncio.gather(
            *[user_store.upsert_external_user(external(name=f"Alice {i}"), "webhook_integration") for i in range(5)],
            return_exceptions=True,
        )

        users = [r[0] for r in results if not isinstance(r, BaseException)]
        assert users
        assert len({u.id for u in users}) == 1
        assert await user_store.count_users() == 1

    @pytest.mark.asyncio
    async def test_upsert_restores_soft_deleted(self, user_store):
        """Edge case: a deleted user synced again is reactivated"""
        await user_store.upsert_external_user(external(), "webhook_integration")
        await user_store.soft_delete_by_external_id("ext-1")

        user, _ = await user_store.upsert_external_user(external(), "webhook_integration")

        assert user.is_active is True
        assert user.deleted_at is None

    @pytest.mark.asyncio
    async def test_update_unknown_returns_none(self, user_store):
        """Edge case: update never creates"""
        assert await user_store.update_external_user(external(), "webhook_integration") is None
        assert await user_store.count_users() == 0

    @pytest.mark.asyncio
    async def test_soft_delete_unknown(self, user_store):
        assert await user_store.soft_delete_by_external_id("ext-404") is None


@pytest.mark.unit
class TestRoles:
    """Test role assignment and replacement"""

    @pytest.mark.asyncio
    async def test_assign_twice_is_noop(self, user_store):
        """Edge case: assigning a role the user already has changes nothing"""
        user, _ = await user_store.upsert_external_user(external(), "api_integration")

        await user_store.assign_role(user.id, "editor")
        await user_store.assign_role(user.id, "editor")

        assert await user_store.get_user_roles(user.id) == ["editor"]

    @pytest.mark.asyncio
    async def test_sync_replaces_role_set(self, user_store):
        """Happy path: roles not in the new set are removed"""
        user, _ = await user_store.upsert_external_user(external(), "api_integration")
        await user_store.sync_user_roles(user.id, ["editor", "viewer"])

        roles = await user_store.sync_user_roles(user.id, ["viewer", "auditor", " "])

        assert roles == ["auditor", "viewer"]

    @pytest.mark.asyncio
    async def test_sync_to_empty_set(self, user_store):
        """Edge case: an empty list removes every role"""
        user, _ = await user_store.upsert_external_user(external(), "api_integration")
        await user_store.sync_user_roles(user.id, ["editor"])

        assert await user_store.sync_user_roles(user.id, []) == []

    @pytest.mark.asyncio
    async def test_roles_shared_between_users(self, user_store):
        """Happy path: a role created for one user is reused for the next"""
        alice, _ = await user_store.upsert_external_user(external(), "api_integration")
        bob, _ = await user_store.upsert_external_user(external("ext-2", "bob@example.com"), "api_integration")

        await user_store.sync_user_roles(alice.id, ["editor"])
        await user_store.sync_user_roles(bob.id, ["editor"])

        assert await user_store.get_user_roles(bob.id) == ["editor"]


@pytest.mark.unit
class TestActivityLog:
    """Test audit records"""

    @pytest.mark.asyncio
    async def test_log_and_list(self, user_store):
        await user_store.log_activity("webhook_user.created", entity_id="ext-1", details={"action": "created"})
        await user_store.log_activity("webhook_user.deleted", entity_id="ext-1", status="error")

        entries = await user_store.list_activity()
        created = await user_store.list_activity("webhook_user.created")
        deleted = await user_store.list_activity("webhook_user.deleted")

        assert len(entries) == 2
        assert created[0].details == {"action": "created"}
        assert [e.status for e in deleted] == ["error"]

    @pytest.mark.asyncio
    async def test_log_failure_swallowed(self, user_store, test_engine):
        """Edge case: a broken audit table never fails the caller"""
        from auth_broker.database import drop_db

        await drop_db(test_engine)

        await user_store.log_activity("anything")
