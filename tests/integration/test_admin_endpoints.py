"""
Integration tests for administrative endpoints.
"""

import pytest
from httpx import AsyncClient

PASSWORD = "correct-horse"


async def login_as(client: AsyncClient, email: str) -> dict:
    """Register and log in; the first account registered is the admin"""
    await client.post("/auth/register", json={"email": email, "password": PASSWORD})
    response = await client.post("/auth/credentials", json={"email": email, "password": PASSWORD})
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['session_token']}"}


@pytest.mark.integration
class TestPasswordReset:
    """Test POST /api/admin/users/reset-password endpoint."""

    @pytest.mark.asyncio
    async def test_admin_resets_password(self, client: AsyncClient):
        admin = await login_as(client, "admin@example.com")
        await login_as(client, "bob@example.com")

        response = await client.post(
            "/api/admin/users/reset-password",
            json={"email": "bob@example.com", "new_password": "battery-staple"},
            headers=admin,
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        login = await client.post("/auth/credentials", json={"email": "bob@example.com", "password": "battery-staple"})
        assert login.status_code == 200

    @pytest.mark.asyncio
    async def test_non_admin_refused(self, client: AsyncClient):
        await login_as(client, "admin@example.com")
        bob = await login_as(client, "bob@example.com")

        response = await client.post(
            "/api/admin/users/reset-password",
            json={"email": "admin@example.com", "new_password": "battery-staple"},
            headers=bob,
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_user(self, client: AsyncClient):
        admin = await login_as(client, "admin@example.com")

        response = await client.post(
            "/api/admin/users/reset-password",
            json={"email": "nobody@example.com", "new_password": "battery-staple"},
            headers=admin,
        )

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "User not found"}


@pytest.mark.integration
class TestRateLimitAdmin:
    """Test GET|DELETE /api/admin/rate-limits/{limit_type}/{client_id} endpoints."""

    @pytest.mark.asyncio
    async def test_status_and_clear(self, client: AsyncClient):
        """Test status reflects auth requests and does not count itself."""
        # Register + login count two requests against the auth class
        admin = await login_as(client, "admin@example.com")

        first = await client.get("/api/admin/rate-limits/auth/127.0.0.1", headers=admin)
        second = await client.get("/api/admin/rate-limits/auth/127.0.0.1", headers=admin)

        assert first.status_code == 200
        assert first.json()["count"] == 2
        assert first.json()["remaining"] == 98
        assert second.json()["count"] == 2

        cleared = await client.delete("/api/admin/rate-limits/auth/127.0.0.1", headers=admin)
        after = await client.get("/api/admin/rate-limits/auth/127.0.0.1", headers=admin)

        assert cleared.json() == {"success": True, "cleared": True}
        assert after.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_unknown_limit_type(self, client: AsyncClient):
        admin = await login_as(client, "admin@example.com")

        response = await client.get("/api/admin/rate-limits/bogus/127.0.0.1", headers=admin)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_limit_exceeded(self, broker_factory, client_factory):
        """Test the request past the limit gets 429 with Retry-After."""
        broker = await broker_factory()
        async with client_factory(broker) as client:
            for _ in range(100):
                await client.get("/auth/config")

            response = await client.get("/auth/config")

        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "Rate limit exceeded"
        assert 0 < int(response.headers["Retry-After"]) <= 60
        assert response.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_rate_limiting_disabled(self, broker_factory, client_factory):
        broker = await broker_factory(rate_limit_enabled=False)
        async with client_factory(broker) as client:
            response = await client.get("/auth/config")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
