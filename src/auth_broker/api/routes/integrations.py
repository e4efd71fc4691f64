"""Integration Routes

Key Endpoints:
- POST /api/integrations/webhook: Signed user lifecycle events
- GET /api/integrations/webhook: Subscription verification challenge
- GET /api/integrations/config: Active provider details (admin)
- POST /api/integrations/sync: Manual user sync (admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from auth_broker.api.dependencies import get_broker, get_manager, require_admin
from auth_broker.broker import Broker
from auth_broker.core.auth.manager import AuthManager
from auth_broker.domain.models.api_auth import SyncRequest
from auth_broker.domain.models.auth import Session
from auth_broker.infrastructure.ratelimit.limiter import RateLimit

router = APIRouter(prefix="/api/integrations", tags=["integrations"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-hub-signature-256", "x-signature", "signature")
DELIVERY_HEADER = "x-webhook-delivery"


@router.post("/webhook", dependencies=[Depends(RateLimit("api"))])
async def receive_webhook(request: Request, manager: AuthManager = Depends(get_manager)):
    """Verify and process one webhook delivery

    The signature covers the raw body, so the body is handed on unparsed.
    """
    body = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    delivery_id = request.headers.get(DELIVERY_HEADER)

    result = await manager.handle_webhook(body, signature, delivery_id)
    return JSONResponse(status_code=200 if result.get("success") else 400, content=result)


@router.get("/webhook", dependencies=[Depends(RateLimit("api"))])
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    manager: AuthManager = Depends(get_manager),
):
    if mode not in (None, "subscribe"):
        raise HTTPException(status_code=400, detail="Unsupported hub.mode")

    answer = await manager.verify_webhook_challenge(verify_token, challenge)
    if answer is None:
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(answer)


@router.get("/config", dependencies=[Depends(RateLimit("admin"))])
async def integration_config(
    session: Session = Depends(require_admin),
    broker: Broker = Depends(get_broker),
) -> dict:
    """Active provider (secrets redacted), available providers and registry stats"""
    manager = broker.manager
    return {
        "current": manager.get_provider_info(),
        "available": manager.get_available_providers(),
        "registry": broker.registry.get_stats(),
        "sync_running": manager.sync_running,
    }


@router.post("/sync", dependencies=[Depends(RateLimit("admin"))])
async def trigger_sync(
    body: Optional[SyncRequest] = None,
    session: Session = Depends(require_admin),
    manager: AuthManager = Depends(get_manager),
) -> dict:
    """Sync one user (user_id given) or every user from the directory"""
    if body is not None and body.user_id:
        result = await manager.sync_user(body.user_id)
        if result is None:
            return {"success": True, "action": "skipped", "message": "Provider does not poll for users"}
        return result

    stats = await manager.sync_all_users()
    if stats is None:
        return {"success": True, "action": "skipped", "message": "Provider does not poll for users"}
    logger.info(f"Manual sync by {session.subject}: {stats.to_dict()}")
    return {"success": True, "action": "sync_all", "stats": stats.to_dict()}
