"""Webhook integration provider.

Receives user lifecycle events pushed by an external system:

    POST /api/integrations/webhook
    X-Hub-Signature-256: sha256=<hex HMAC-SHA256 of the raw body>
    X-Webhook-Delivery: <optional unique delivery id>

    {"event": "user.created", "data": {"id": "ext-1", "email": "a@b.c", ...}}

Supported events: user.created, user.updated, user.deleted,
user.role_changed, user.bulk_sync. The signature is checked before the body
is parsed; a mismatch rejects the whole delivery. Deliveries carrying an id
are processed at most once within the ledger TTL.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional, Union

from auth_broker.core.auth.errors import SignatureVerificationError
from auth_broker.core.auth.provider import AuthProvider, ProviderConfig, ProviderContext
from auth_broker.domain.models.auth import Session
from auth_broker.domain.services.user_sync import batch_sync_users, extract_role_names, normalize_user_data

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
ROLE_SOURCE = "webhook"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def canonical_body(payload: Union[bytes, str, dict]) -> bytes:
    """Bytes the signature is computed over

    Raw bodies are used as received. Already-parsed payloads are serialized
    compactly with keys in insertion order.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class DeliveryLedger:
    """Webhook delivery ids already claimed (Redis preferred, in-memory fallback)"""

    KEY_PREFIX = "webhook_delivery:"

    def __init__(self, redis_client=None, clock=time.time):
        self._redis = redis_client
        self._clock = clock
        self._memory: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def claim(self, delivery_id: str, ttl_seconds: int) -> bool:
        """Claim a delivery id; False when it was already claimed"""
        if self._redis is not None:
            try:
                claimed = await self._redis.set(f"{self.KEY_PREFIX}{delivery_id}", "1", nx=True, ex=ttl_seconds)
                return bool(claimed)
            except Exception as e:
                logger.warning(f"Redis unavailable for webhook ledger, using in-memory fallback: {e}")

        async with self._lock:
            now = self._clock()
            expiry = self._memory.get(delivery_id)
            if expiry is not None and expiry > now:
                return False
            self._purge_expired(now)
            self._memory[delivery_id] = now + ttl_seconds
            return True

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, expiry in self._memory.items() if expiry <= now]
        for k in expired:
            del self._memory[k]

    async def release(self, delivery_id: str) -> None:
        """Forget a claim so a failed delivery can be retried"""
        if self._redis is not None:
            try:
                await self._redis.delete(f"{self.KEY_PREFIX}{delivery_id}")
            except Exception as e:
                logger.warning(f"Redis unavailable for webhook ledger release: {e}")
        async with self._lock:
            self._memory.pop(delivery_id, None)


class WebhookIntegrationProvider(AuthProvider):
    """User synchronization via signed webhooks.

    Configuration:
        AUTH_PROVIDER=webhook_integration
        WEBHOOK_SECRET=<at least 16 characters>
        WEBHOOK_VALIDATE_SIGNATURE=true (default; "false" disables)
        WEBHOOK_VERIFY_TOKEN=<token for the GET verification challenge>
    """

    provider_id = "webhook_integration"

    def __init__(self, context: ProviderContext):
        super().__init__(context)
        self.deliveries = DeliveryLedger(context.redis)
        self._handlers = {
            "user.created": self._handle_user_created,
            "user.updated": self._handle_user_updated,
            "user.deleted": self._handle_user_deleted,
            "user.role_changed": self._handle_user_role_changed,
            "user.bulk_sync": self._handle_bulk_sync,
        }

    async def verify_session(self, config: ProviderConfig, token: str) -> Optional[Session]:
        session = await self._verify_token(token)
        if session is None:
            return None
        return await self._check_local_user(session)

    def verify_signature(self, config: ProviderConfig, body: bytes, signature: Optional[str]) -> None:
        """Check the HMAC signature in constant time

        Raises:
            SignatureVerificationError: Signature missing, malformed or wrong
        """
        secret = config.get("secret")
        if not secret:
            logger.error("Webhook signature validation enabled but no secret configured")
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing signature")

        provided = signature.strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]

        expected = compute_signature(secret, body)
        if not hmac.compare_digest(expected, provided.lower()):
            raise SignatureVerificationError("Invalid signature")

    def verify_challenge(self, config: ProviderConfig, verify_token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Answer a subscription verification request

        Returns:
            The challenge when the verify token matches, None otherwise
        """
        expected = config.get("verify_token")
        if not expected or not verify_token or challenge is None:
            return None
        if not hmac.compare_digest(expected, verify_token):
            return None
        return challenge

    async def handle_webhook(
        self,
        config: ProviderConfig,
        payload: Union[bytes, str, dict],
        signature: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> dict:
        """Verify and process one webhook delivery.

        Args:
            config: Resolved provider configuration
            payload: Raw request body, or an already-parsed JSON object
            signature: Value of the signature header
            delivery_id: Unique delivery id, when the sender provides one

        Returns:
            {"success": True, "action": ...} or {"success": False, "error": ...}

        Raises:
            SignatureVerificationError: Signature validation failed
        """
        if config.get("enable_signature_validation", True):
            self.verify_signature(config, canonical_body(payload), signature)

        if isinstance(payload, (bytes, str)):
            try:
                payload = json.loads(payload)
            except ValueError:
                return {"success": False, "error": "Invalid JSON payload"}
        if not isinstance(payload, dict):
            return {"success": False, "error": "Invalid payload"}

        event = payload.get("event") or payload.get("type")
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown webhook event: {event}")
            return {"success": False, "error": "Unknown event type"}

        delivery_id = delivery_id or payload.get("delivery_id")
        if delivery_id:
            ttl = int(config.get("delivery_ttl") or 86400)
            if not await self.deliveries.claim(str(delivery_id), ttl):
                logger.info(f"Duplicate webhook delivery ignored: {delivery_id}")
                return {"success": True, "action": "duplicate", "delivery_id": delivery_id}

        result = await self._dispatch(event, handler, payload.get("data") or {})
        if delivery_id and not result.get("success"):
            await self.deliveries.release(str(delivery_id))
        return result

    async def _dispatch(self, event: str, handler, data: Any) -> dict:
        """Run a handler; every outcome is audited, audit failures are swallowed"""
        external_id = self._external_id(data)
        try:
            result = await handler(data)
        except ValueError as e:
            logger.warning(f"Webhook {event} rejected: {e}")
            result = {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Webhook {event} processing failed for {external_id}: {e}", exc_info=True)
            result = {"success": False, "error": f"Failed to process {event} event"}

        details = {k: v for k, v in result.items() if k in ("action", "error", "stats", "roles")}
        if isinstance(result.get("user"), dict):
            details["user_id"] = result["user"].get("id")
        await self.user_store.log_activity(
            f"webhook_{event}",
            entity_id=external_id,
            details=details,
            status="success" if result.get("success") else "error",
        )
        return result

    @staticmethod
    def _external_id(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        value = data.get("id") or data.get("user_id") or data.get("external_id")
        return str(value) if value is not None else ("system" if "users" in data else None)

    async def _sync_roles(self, user_id: str, normalized: dict) -> None:
        if normalized["roles"]:
            await self.user_store.sync_user_roles(user_id, normalized["roles"], source=ROLE_SOURCE)

    async def _handle_user_created(self, data: dict) -> dict:
        normalized = normalize_user_data(data)
        user, created = await self.user_store.upsert_external_user(normalized, self.provider_id)
        await self._sync_roles(user.id, normalized)
        return {"success": True, "action": "created" if created else "updated", "user": user.to_public_dict()}

    async def _handle_user_updated(self, data: dict) -> dict:
        normalized = normalize_user_data(data)
        user = await self.user_store.update_external_user(normalized, self.provider_id)
        if user is None:
            # Unknown user: create it
            return await self._handle_user_created(data)
        await self._sync_roles(user.id, normalized)
        return {"success": True, "action": "updated", "user": user.to_public_dict()}

    async def _handle_user_deleted(self, data: dict) -> dict:
        external_id = self._external_id(data)
        if not external_id:
            raise ValueError("User data missing required ID field")

        user = await self.user_store.soft_delete_by_external_id(external_id)
        if user is None:
            return {"success": True, "action": "not_found", "user_id": external_id}
        return {"success": True, "action": "deleted", "user": user.to_public_dict()}

    async def _handle_user_role_changed(self, data: dict) -> dict:
        external_id = self._external_id(data)
        if not external_id:
            raise ValueError("User data missing required ID field")

        user = await self.user_store.get_by_external_id(external_id)
        if user is None:
            return {"success": False, "error": "User not found"}

        roles = await self.user_store.sync_user_roles(
            user.id, extract_role_names(data.get("roles")), source=ROLE_SOURCE
        )
        return {"success": True, "action": "role_changed", "user": user.to_public_dict(), "roles": roles}

    async def _handle_bulk_sync(self, data: dict) -> dict:
        users = data.get("users") or []
        if not isinstance(users, list):
            raise ValueError("Bulk sync requires a list of users")

        stats = await batch_sync_users(self.user_store, users, self.provider_id, source=ROLE_SOURCE)
        return {"success": True, "action": "bulk_sync", "stats": stats.to_dict(), "deactivated": stats.deactivated}
