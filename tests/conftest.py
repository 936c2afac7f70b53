"""
Pytest configuration and fixtures for testing
"""
import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

import database_models  # noqa: F401
from auth_utils import ACCESS_COOKIE, create_access_token
from config.settings import settings
from crud.subscription import SubscriptionRepository
from database import Base
from main import create_app

TEST_JWT_SECRET = "test-jwt-secret-for-session-cookies"
TEST_PRICE_TRADER = "price_trader_test"
TEST_PRICE_INNER_CIRCLE = "price_inner_circle_test"


@pytest.fixture
async def test_engine(tmp_path):
    """
    An on-disk SQLite database per test.

    On disk rather than :memory: so the interceptor's session and the route's
    session see the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        future=True,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an AsyncSession on the per-test database.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def test_settings(monkeypatch, tmp_path):
    """
    The global settings object reset to a fully unconfigured state.

    Tests turn individual rails on with monkeypatch.setattr before building
    the app; monkeypatch restores everything afterwards.
    """
    overrides = {
        "auth_jwt_secret": TEST_JWT_SECRET,
        "app_url": "http://testserver",
        "stripe_secret_key": None,
        "stripe_webhook_secret": None,
        "stripe_price_trader": None,
        "stripe_price_inner_circle": None,
        "nowpayments_api_key": None,
        "nowpayments_ipn_secret": None,
        "cron_secret": None,
        "backup_user_email": None,
        "backup_dir": str(tmp_path / "backups"),
        "redis_url": None,
        "env": None,
        "render": None,
    }
    for field, value in overrides.items():
        monkeypatch.setattr(settings, field, value)
    return settings


@pytest.fixture
def stripe_settings(test_settings, monkeypatch):
    """Settings with the Stripe rail configured."""
    monkeypatch.setattr(test_settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(test_settings, "stripe_webhook_secret", "whsec_test_123")
    monkeypatch.setattr(test_settings, "stripe_price_trader", TEST_PRICE_TRADER)
    monkeypatch.setattr(test_settings, "stripe_price_inner_circle", TEST_PRICE_INNER_CIRCLE)
    return test_settings


@pytest.fixture
def build_app(test_settings, session_factory):
    """Build the app from the current (patched) settings."""
    def _build():
        return create_app(test_settings, session_factory=session_factory)
    return _build


@pytest.fixture
def client_for():
    """
    Returns a factory for httpx.AsyncClient bound to an app in-process.

    Passing user_id signs the client in with a fresh access cookie.
    """
    def _client_for(app, user_id=None, email=None):
        cookies = {}
        if user_id:
            cookies[ACCESS_COOKIE] = create_access_token(user_id, email)
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver",
            cookies=cookies,
        )
    return _client_for


@pytest.fixture
def make_subscription(session_factory):
    """Insert a subscription record directly, bypassing the routes."""
    async def _make(user_id, **values):
        async with session_factory() as session:
            record = await SubscriptionRepository(session).upsert(user_id, values)
            await session.commit()
            return record
    return _make


@pytest.fixture
def load_subscription(session_factory):
    """Read a subscription record in a fresh session."""
    async def _load(user_id):
        async with session_factory() as session:
            return await SubscriptionRepository(session).get_by_user_id(user_id)
    return _load
