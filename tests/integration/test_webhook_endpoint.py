"""
Integration tests for the webhook and integration endpoints.
"""

import json

import pytest
import pytest_asyncio
from httpx import AsyncClient

from auth_broker.core.auth.webhook import compute_signature

WEBHOOK_SECRET = "webhook-secret-0123456789"
WEBHOOK_ENV = {"WEBHOOK_SECRET": WEBHOOK_SECRET, "WEBHOOK_VERIFY_TOKEN": "verify-me"}


def signed_request(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Hub-Signature-256": f"sha256={compute_signature(WEBHOOK_SECRET, body)}",
    }
    return body, headers


@pytest_asyncio.fixture
async def webhook_broker(broker_factory):
    return await broker_factory(environ=WEBHOOK_ENV, auth_provider="webhook_integration")


@pytest_asyncio.fixture
async def webhook_client(webhook_broker, client_factory):
    async with client_factory(webhook_broker) as client:
        yield client


def admin_headers(broker) -> dict:
    token = broker.tokens.issue({"sub": "ops-admin", "is_admin": True, "provider": "webhook_integration"})
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.integration
class TestWebhookDelivery:
    """Test POST /api/integrations/webhook endpoint."""

    @pytest.mark.asyncio
    async def test_signed_delivery(self, webhook_client: AsyncClient, webhook_broker):
        """Test a signed user.created event creates the user."""
        body, headers = signed_request({"event": "user.created", "data": {"id": "ext-1", "email": "alice@example.com"}})

        response = await webhook_client.post("/api/integrations/webhook", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["action"] == "created"
        assert await webhook_broker.user_store.get_by_external_id("ext-1") is not None

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, webhook_client: AsyncClient, webhook_broker):
        """Test a body altered after signing is rejected before processing."""
        body, headers = signed_request({"event": "user.created", "data": {"id": "ext-1", "email": "alice@example.com"}})
        tampered = body.replace(b"ext-1", b"ext-2")

        response = await webhook_client.post("/api/integrations/webhook", content=tampered, headers=headers)

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Invalid signature"}
        assert await webhook_broker.user_store.get_by_external_id("ext-2") is None

    @pytest.mark.asyncio
    async def test_unsigned_rejected(self, webhook_client: AsyncClient):
        body = json.dumps({"event": "user.created", "data": {}}).encode()

        response = await webhook_client.post("/api/integrations/webhook", content=body)

        assert response.status_code == 401
        assert response.json()["error"] == "Missing signature"

    @pytest.mark.asyncio
    async def test_alternate_signature_header(self, webhook_client: AsyncClient):
        body, headers = signed_request({"event": "user.created", "data": {"id": "ext-1", "email": "a@example.com"}})

        response = await webhook_client.post(
            "/api/integrations/webhook",
            content=body,
            headers={"X-Signature": headers["X-Hub-Signature-256"]},
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, webhook_client: AsyncClient):
        """Test a redelivered event is acknowledged but not processed twice."""
        body, headers = signed_request({"event": "user.created", "data": {"id": "ext-1", "email": "a@example.com"}})
        headers["X-Webhook-Delivery"] = "delivery-1"

        first = await webhook_client.post("/api/integrations/webhook", content=body, headers=headers)
        second = await webhook_client.post("/api/integrations/webhook", content=body, headers=headers)

        assert first.json()["action"] == "created"
        assert second.status_code == 200
        assert second.json() == {"success": True, "action": "duplicate", "delivery_id": "delivery-1"}

    @pytest.mark.asyncio
    async def test_unknown_event(self, webhook_client: AsyncClient):
        body, headers = signed_request({"event": "user.teleported", "data": {"id": "ext-1"}})

        response = await webhook_client.post("/api/integrations/webhook", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Unknown event type"}

    @pytest.mark.asyncio
    async def test_webhook_refused_for_local_provider(self, client: AsyncClient):
        """Test the endpoint is unavailable when another provider is active."""
        body, headers = signed_request({"event": "user.created", "data": {}})

        response = await client.post("/api/integrations/webhook", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_operation"


@pytest.mark.integration
class TestWebhookChallenge:
    """Test GET /api/integrations/webhook endpoint."""

    @pytest.mark.asyncio
    async def test_challenge_echoed(self, webhook_client: AsyncClient):
        response = await webhook_client.get(
            "/api/integrations/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )

        assert response.status_code == 200
        assert response.text == "12345"

    @pytest.mark.asyncio
    async def test_wrong_token(self, webhook_client: AsyncClient):
        response = await webhook_client.get(
            "/api/integrations/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "12345"},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unsupported_mode(self, webhook_client: AsyncClient):
        response = await webhook_client.get(
            "/api/integrations/webhook",
            params={"hub.mode": "unsubscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )

        assert response.status_code == 400


@pytest.mark.integration
class TestIntegrationAdmin:
    """Test GET /api/integrations/config and POST /api/integrations/sync endpoints."""

    @pytest.mark.asyncio
    async def test_config_redacts_secret(self, webhook_client: AsyncClient, webhook_broker):
        response = await webhook_client.get("/api/integrations/config", headers=admin_headers(webhook_broker))

        assert response.status_code == 200
        data = response.json()
        assert data["current"]["provider"] == "webhook_integration"
        assert data["current"]["config"]["secret"] == "********"
        assert data["current"]["config"]["verify_token"] == "********"
        assert data["registry"]["total_providers"] == 5
        assert data["sync_running"] is False
        assert WEBHOOK_SECRET not in response.text

    @pytest.mark.asyncio
    async def test_config_requires_admin(self, webhook_client: AsyncClient, webhook_broker):
        token = webhook_broker.tokens.issue({"sub": "someone", "provider": "webhook_integration"})

        response = await webhook_client.get("/api/integrations/config", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_config_requires_session(self, webhook_client: AsyncClient):
        response = await webhook_client.get("/api/integrations/config")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_sync_skipped_for_webhook(self, webhook_client: AsyncClient, webhook_broker):
        """Test manual sync is a no-op for a push-based provider."""
        response = await webhook_client.post("/api/integrations/sync", headers=admin_headers(webhook_broker))

        assert response.status_code == 200
        assert response.json()["action"] == "skipped"
