"""Authentication Routes

Purpose: Browser and API login flows for the active provider

Key Endpoints:
- GET /auth/login: Issue state cookie and redirect to the provider
- GET /auth/callback: Authorization-code callback (state checked against cookie)
- POST /auth/credentials: Email/username + password login
- POST /auth/register: Local account registration
- POST /auth/password: Change own password (local accounts)
- GET /auth/session: Current session
- GET /auth/config: Active provider and capabilities
- GET|POST /auth/logout: Revoke session and clear cookie
"""

import hmac
import logging
import secrets
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from auth_broker.api.dependencies import extract_session_token, get_broker, get_manager, require_session
from auth_broker.broker import Broker
from auth_broker.config.settings import Settings
from auth_broker.core.auth.manager import AuthManager
from auth_broker.domain.models.api_auth import (
    AuthResponse,
    ChangePasswordRequest,
    CredentialsRequest,
    ProviderConfigResponse,
    RegisterRequest,
    SessionResponse,
)
from auth_broker.domain.models.auth import Session
from auth_broker.infrastructure.ratelimit.limiter import RateLimit

router = APIRouter(prefix="/auth", tags=["authentication"], dependencies=[Depends(RateLimit("auth"))])
logger = logging.getLogger(__name__)


def set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.session_cookie_name, path="/")


def _callback_uri(request: Request, manager: AuthManager) -> str:
    return manager.config.get("redirect_uri") or str(request.url_for("auth_callback"))


def _error_redirect(code: str, settings: Settings) -> RedirectResponse:
    response = RedirectResponse(f"/?error={quote(code)}", status_code=302)
    response.delete_cookie(settings.state_cookie_name, path="/")
    return response


@router.get("/login")
async def login(
    request: Request,
    next_url: str = Query("/", alias="next"),
    broker: Broker = Depends(get_broker),
):
    """Start a login: redirect to the provider, or to the local login page"""
    manager = broker.manager
    settings = broker.settings

    if not manager.capabilities.supports_callback:
        url = await manager.get_authorization_url(next_url)
        return RedirectResponse(url, status_code=302)

    state = secrets.token_urlsafe(32)
    url = await manager.get_authorization_url(_callback_uri(request, manager), state)

    response = RedirectResponse(url, status_code=302)
    response.set_cookie(
        key=settings.state_cookie_name,
        value=state,
        max_age=settings.state_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
        path="/",
    )
    return response


@router.get("/callback", name="auth_callback")
async def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    broker: Broker = Depends(get_broker),
):
    """Authorization-code callback

    Failures redirect to /?error=<code> without internal detail.
    """
    settings = broker.settings
    if error:
        logger.warning(f"Provider returned error on callback: {error}")
        return _error_redirect("authorization_denied", settings)

    expected_state = request.cookies.get(settings.state_cookie_name)
    if not code or not state or not expected_state or not hmac.compare_digest(state, expected_state):
        logger.warning("Callback rejected: missing code or state mismatch")
        return _error_redirect("invalid_state", settings)

    try:
        result = await broker.manager.handle_callback(code, state, _callback_uri(request, broker.manager))
    except Exception as e:
        logger.error(f"Callback handling failed: {e}", exc_info=True)
        return _error_redirect("authentication_failed", settings)

    if not result.success:
        return _error_redirect("authentication_failed", settings)

    response = RedirectResponse("/", status_code=302)
    response.delete_cookie(settings.state_cookie_name, path="/")
    set_session_cookie(response, result.session_token, settings)
    return response


@router.post("/credentials", response_model=AuthResponse)
async def credentials_login(body: CredentialsRequest, broker: Broker = Depends(get_broker)):
    """Credential login; the session token is returned and set as cookie"""
    result = await broker.manager.authenticate(body.to_credentials())
    if not result.success:
        return JSONResponse(status_code=401, content=result.to_dict())

    response = JSONResponse(content=result.to_dict())
    set_session_cookie(response, result.session_token, broker.settings)
    return response


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(body: RegisterRequest, broker: Broker = Depends(get_broker)):
    if not broker.settings.enable_registration:
        raise HTTPException(status_code=403, detail="Registration is disabled")

    result = await broker.manager.create_user(body.model_dump(exclude_none=True))
    if not result.get("success"):
        return JSONResponse(status_code=400, content={"success": False, "error": result.get("error")})
    return AuthResponse(success=True, user=result["user"])


@router.post("/password", response_model=AuthResponse)
async def change_password(
    body: ChangePasswordRequest,
    session: Session = Depends(require_session),
    manager: AuthManager = Depends(get_manager),
):
    if not session.local_user_id:
        raise HTTPException(status_code=400, detail="Session has no local account")

    result = await manager.change_password(session.local_user_id, body.current_password, body.new_password)
    if not result.get("success"):
        return JSONResponse(status_code=400, content={"success": False, "error": result.get("error")})
    return AuthResponse(success=True, message=result.get("message"))


@router.get("/session", response_model=SessionResponse)
async def get_session(session: Session = Depends(require_session)) -> SessionResponse:
    return SessionResponse(**session.to_dict())


@router.get("/config", response_model=ProviderConfigResponse)
async def get_auth_config(broker: Broker = Depends(get_broker)) -> ProviderConfigResponse:
    """Tells clients which login mode to use"""
    info = broker.manager.get_provider_info()
    return ProviderConfigResponse(
        provider=info["provider"],
        name=info["name"],
        category=info["category"],
        capabilities=info["capabilities"],
        registration_enabled=broker.settings.enable_registration and info["provider"] == "local_auth",
    )


@router.api_route("/logout", methods=["GET", "POST"])
async def logout(
    token: Optional[str] = Depends(extract_session_token),
    broker: Broker = Depends(get_broker),
):
    """Always succeeds, whatever state the session was in"""
    result = await broker.manager.logout(token)
    response = JSONResponse(content={"success": True, **{k: v for k, v in result.items() if k != "success"}})
    clear_session_cookie(response, broker.settings)
    return response
