"""Auth Broker

Main FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth_broker.api.routes import admin, auth, integrations
from auth_broker.broker import Broker, create_broker
from auth_broker.config.settings import Settings, get_settings
from auth_broker.core.auth.errors import (
    AuthenticationError,
    CapabilityMismatchError,
    ConfigurationError,
    SignatureVerificationError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map the broker's exception taxonomy onto HTTP responses"""

    @app.exception_handler(CapabilityMismatchError)
    async def capability_mismatch_handler(request: Request, exc: CapabilityMismatchError):
        logger.warning(f"Capability mismatch on {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": "unsupported_operation", "message": str(exc)})

    @app.exception_handler(SignatureVerificationError)
    async def signature_handler(request: Request, exc: SignatureVerificationError):
        logger.warning(f"Webhook signature rejected: {exc}")
        return JSONResponse(status_code=401, content={"success": False, "error": str(exc)})

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"error": "authentication_failed", "message": str(exc)})

    @app.exception_handler(UpstreamError)
    async def upstream_handler(request: Request, exc: UpstreamError):
        logger.error(f"Upstream failure on {request.url.path}: {exc} (status={exc.status_code})")
        return JSONResponse(
            status_code=502,
            content={"error": "upstream_error", "message": "The identity provider could not be reached."},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        logger.error(f"Configuration error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "configuration_error", "message": "Authentication is not configured correctly."},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler for unhandled errors"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )


def create_app(settings: Optional[Settings] = None, broker: Optional[Broker] = None) -> FastAPI:
    """Build the application

    Args:
        settings: Application settings (get_settings() when omitted)
        broker: Prebuilt broker; the lifespan builds and closes one otherwise
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info(f"Starting {settings.service_name} v{settings.service_version}")
        logger.info(f"Environment: {settings.environment}")

        owns_broker = getattr(app.state, "broker", None) is None
        if owns_broker:
            app.state.broker = await create_broker(settings)
            logger.info(f"Broker ready (provider: {app.state.broker.manager.provider_id})")

        yield

        logger.info(f"Shutting down {settings.service_name}")
        if owns_broker:
            await app.state.broker.close()

    app = FastAPI(
        title="Auth Broker",
        version=settings.service_version,
        description="Provider-abstracted authentication and identity broker",
        lifespan=lifespan,
    )
    if broker is not None:
        app.state.broker = broker

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    @app.get("/health")
    async def root_health_check(request: Request):
        """Root health check endpoint"""
        current = getattr(request.app.state, "broker", None)
        redis_ok = await current.redis.health_check() if current is not None else False
        return {
            "status": "healthy",
            "service": settings.service_name,
            "version": settings.service_version,
            "environment": settings.environment,
            "provider": current.manager.provider_id if current is not None else None,
            "redis": "connected" if redis_ok else "unavailable",
        }

    app.include_router(auth.router)
    app.include_router(integrations.router)
    app.include_router(admin.router)
    register_exception_handlers(app)
    return app


settings = get_settings()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "auth_broker.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
