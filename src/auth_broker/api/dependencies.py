"""Shared route dependencies: broker access, token extraction, session guards"""

import logging
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from auth_broker.broker import Broker
from auth_broker.core.auth.manager import AuthManager
from auth_broker.domain.models.auth import Session

logger = logging.getLogger(__name__)


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def get_manager(broker: Broker = Depends(get_broker)) -> AuthManager:
    return broker.manager


async def extract_session_token(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    broker: Broker = Depends(get_broker),
) -> Optional[str]:
    """Bearer token from the Authorization header, else the session cookie"""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    return request.cookies.get(broker.settings.session_cookie_name) or None


async def get_current_session_optional(
    token: Optional[str] = Depends(extract_session_token),
    manager: AuthManager = Depends(get_manager),
) -> Optional[Session]:
    """Current session (optional - no error if missing/invalid)"""
    if not token:
        return None
    return await manager.get_session(token)


async def require_session(
    session: Optional[Session] = Depends(get_current_session_optional),
) -> Session:
    """Require an authenticated session (raises 401 if not authenticated)"""
    if session is None:
        correlation_id = str(uuid.uuid4())
        logger.info(f"Authentication required but not provided (correlation: {correlation_id})")
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Please log in to access this resource.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


async def require_admin(session: Session = Depends(require_session)) -> Session:
    if not session.is_admin:
        logger.warning(f"Admin endpoint refused for {session.subject}")
        raise HTTPException(status_code=403, detail="Administrator privileges required")
    return session
