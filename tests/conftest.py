"""
Pytest configuration and fixtures for auth broker tests.

Provides fixtures for:
- Settings pointing at a per-test SQLite file, Redis disabled
- Database engine and user store
- Token service and provider context
- Broker and ASGI test client
"""

from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from auth_broker.broker import create_broker
from auth_broker.config.settings import Settings
from auth_broker.core.auth.provider import ProviderContext
from auth_broker.database import create_engine, create_session_factory, init_db
from auth_broker.infrastructure.auth.token_codec import (
    CompactTokenCodec,
    RevocationStore,
    SessionTokenCodec,
    TokenService,
)
from auth_broker.infrastructure.auth.user_store import UserStore

TEST_SESSION_SECRET = "test-session-secret-that-is-long-enough"
WEBHOOK_SECRET = "webhook-secret-0123456789"


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'test_db.sqlite'}",
        "redis_enabled": False,
        "session_secret": TEST_SESSION_SECRET,
        "bcrypt_rounds": 4,  # fast hashing in tests
        "auth_provider": "local_auth",
        "environment": "development",
        "enable_user_sync": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def settings_factory(tmp_path):
    """Settings sharing the test database, with overrides"""
    def factory(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)
    return factory


@pytest_asyncio.fixture
async def test_engine(settings):
    """Create test database engine with the schema in place."""
    engine = create_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def user_store(test_engine) -> UserStore:
    return UserStore(create_session_factory(test_engine))


@pytest.fixture
def token_service(settings) -> TokenService:
    return TokenService(
        SessionTokenCodec(settings.session_secret, issuer=settings.session_issuer),
        CompactTokenCodec(settings.session_secret),
        RevocationStore(),
    )


@pytest.fixture
def provider_context(settings, user_store, token_service) -> ProviderContext:
    return ProviderContext(settings=settings, user_store=user_store, tokens=token_service)


@pytest_asyncio.fixture
async def broker_factory(tmp_path):
    """Build brokers for a given provider and environment; closed after the test"""
    brokers = []

    async def factory(
        environ: Optional[dict] = None,
        http_transport=None,
        **setting_overrides,
    ):
        broker = await create_broker(
            make_settings(tmp_path, **setting_overrides),
            environ=environ or {},
            http_transport=http_transport,
        )
        brokers.append(broker)
        return broker

    yield factory

    for broker in brokers:
        await broker.close()


@pytest_asyncio.fixture
async def broker(broker_factory):
    return await broker_factory()


def make_client(broker) -> AsyncClient:
    from auth_broker.main import create_app

    app = create_app(broker.settings, broker=broker)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def client_factory():
    """ASGI test client for a given broker"""
    return make_client


@pytest_asyncio.fixture
async def client(broker):
    async with make_client(broker) as ac:
        yield ac
