"""Administrative Routes

Key Endpoints:
- POST /api/admin/users/reset-password: Reset a local account's password
- GET /api/admin/rate-limits/{limit_type}/{client_id}: Current usage (does not count)
- DELETE /api/admin/rate-limits/{limit_type}/{client_id}: Clear recorded requests
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from auth_broker.api.dependencies import get_broker, require_admin
from auth_broker.broker import Broker
from auth_broker.domain.models.api_auth import AuthResponse, ResetPasswordRequest
from auth_broker.domain.models.auth import Session
from auth_broker.infrastructure.ratelimit.limiter import RATE_LIMITS, RateLimit, make_key

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(RateLimit("admin"))])
logger = logging.getLogger(__name__)


def _limit_config(limit_type: str):
    config = RATE_LIMITS.get(limit_type)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Unknown rate limit type: {limit_type}")
    return config


@router.post("/users/reset-password", response_model=AuthResponse)
async def reset_password(
    body: ResetPasswordRequest,
    session: Session = Depends(require_admin),
    broker: Broker = Depends(get_broker),
):
    result = await broker.manager.reset_password(body.email, body.new_password)
    if not result.get("success"):
        return JSONResponse(status_code=400, content={"success": False, "error": result.get("error")})

    logger.info(f"Password of {body.email} reset by {session.subject}")
    return AuthResponse(success=True, message=result.get("message"))


@router.get("/rate-limits/{limit_type}/{client_id}")
async def get_rate_limit_status(
    limit_type: str,
    client_id: str,
    session: Session = Depends(require_admin),
    broker: Broker = Depends(get_broker),
) -> dict:
    config = _limit_config(limit_type)
    status = await broker.rate_limiter.get_status(make_key(limit_type, client_id), config)
    return {"limit_type": limit_type, "client_id": client_id, **status.to_dict()}


@router.delete("/rate-limits/{limit_type}/{client_id}")
async def clear_rate_limit(
    limit_type: str,
    client_id: str,
    session: Session = Depends(require_admin),
    broker: Broker = Depends(get_broker),
) -> dict:
    _limit_config(limit_type)
    cleared = await broker.rate_limiter.clear(make_key(limit_type, client_id))
    logger.info(f"Rate limit {limit_type}/{client_id} cleared by {session.subject} (existed={cleared})")
    return {"success": True, "cleared": cleared}
