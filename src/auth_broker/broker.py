"""Broker container

Everything the HTTP layer needs, built once at startup and handed to the
routes through app.state:

    broker = await create_broker(get_settings())
    ...
    await broker.close()
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from auth_broker.config.settings import Settings
from auth_broker.core.auth.errors import ConfigurationError
from auth_broker.core.auth.manager import AuthManager
from auth_broker.core.auth.provider import ProviderContext
from auth_broker.core.auth.registry import ProviderRegistry
from auth_broker.database import create_engine, create_session_factory, init_db
from auth_broker.infrastructure.auth.token_codec import (
    CompactTokenCodec,
    RevocationStore,
    SessionTokenCodec,
    TokenService,
)
from auth_broker.infrastructure.auth.user_store import UserStore
from auth_broker.infrastructure.cache.ttl_cache import BoundedTTLCache, SessionCache
from auth_broker.infrastructure.ratelimit.limiter import RateLimiter
from auth_broker.infrastructure.redis.client import RedisClient

logger = logging.getLogger(__name__)


@dataclass
class Broker:
    settings: Settings
    engine: AsyncEngine
    redis: RedisClient
    user_store: UserStore
    tokens: TokenService
    registry: ProviderRegistry
    manager: AuthManager
    rate_limiter: RateLimiter

    async def close(self) -> None:
        await self.manager.stop_user_sync()
        await self.redis.disconnect()
        await self.engine.dispose()
        logger.info("Broker closed")


async def create_broker(
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    provider_config: Optional[Mapping[str, Any]] = None,
) -> Broker:
    """Build the broker and initialize the configured provider

    Args:
        settings: Application settings
        environ: Environment provider configs are read from (os.environ)
        http_transport: httpx transport for outbound provider calls
        provider_config: Explicit config merged over the environment's

    Raises:
        ConfigurationError: Provider unknown, or its config is invalid in production
    """
    environ = os.environ if environ is None else environ

    engine = create_engine(settings.database_url, echo=settings.sql_echo)
    if settings.database_auto_create:
        await init_db(engine)
    user_store = UserStore(create_session_factory(engine))

    redis_client = RedisClient(settings.redis_url)
    if settings.redis_enabled:
        await redis_client.connect()
    redis = redis_client.get_optional_client()

    revocations = RevocationStore(redis)
    tokens = TokenService(
        SessionTokenCodec(
            settings.session_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.session_issuer,
            ttl_seconds=settings.session_ttl_seconds,
        ),
        CompactTokenCodec(settings.session_secret, ttl_seconds=settings.session_ttl_seconds),
        revocations,
    )

    context = ProviderContext(
        settings=settings,
        user_store=user_store,
        tokens=tokens,
        redis=redis,
        http_transport=http_transport,
    )
    registry = ProviderRegistry(context, environ=environ)
    manager = AuthManager(
        registry,
        SessionCache(redis, ttl_seconds=settings.session_cache_ttl_seconds, max_entries=settings.cache_max_entries),
        BoundedTTLCache(max_entries=settings.cache_max_entries, ttl_seconds=settings.validation_cache_ttl_seconds),
        default_provider=settings.auth_provider,
    )

    broker = Broker(
        settings=settings,
        engine=engine,
        redis=redis_client,
        user_store=user_store,
        tokens=tokens,
        registry=registry,
        manager=manager,
        rate_limiter=RateLimiter(redis),
    )

    try:
        validation = await manager.initialize(
            settings.auth_provider,
            provider_config,
            enable_user_sync=settings.enable_user_sync,
            sync_interval=settings.sync_interval_seconds if settings.enable_user_sync else None,
        )
        if not validation.valid and settings.is_production:
            raise ConfigurationError(validation.message)
    except Exception:
        await broker.close()
        raise

    return broker
