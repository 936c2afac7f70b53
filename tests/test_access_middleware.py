"""
Tests for the request interceptor: path classes, redirects by session and
tier, fail-closed lookups and session cookie rotation.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from auth_utils import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    create_access_token,
    create_expired_token,
    create_refresh_token,
    decode_token,
)
from database_models import utc_now
from main import create_app
from utils.access_middleware import (
    AUTH_ONLY,
    PROTECTED,
    PUBLIC,
    PUBLIC_API,
    classify_path,
    is_static_path,
    is_tier_exempt,
)


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/", PUBLIC),
        ("/pricing", PUBLIC),
        ("/about", PUBLIC),
        ("/auth/callback", PUBLIC),
        ("/share/my-edge", PUBLIC),
        ("/login", AUTH_ONLY),
        ("/api/checkout", PUBLIC_API),
        ("/api/webhooks/stripe", PUBLIC_API),
        ("/dashboard", PROTECTED),
        ("/macros", PROTECTED),
        ("/settings", PROTECTED),
        ("/pricing/extra", PROTECTED),
    ],
)
def test_classify_path(path, expected):
    assert classify_path(path) == expected


def test_static_and_exempt_paths():
    assert is_static_path("/favicon.ico")
    assert is_static_path("/_next/static/chunk.js")
    assert is_static_path("/images/logo.PNG")
    assert not is_static_path("/dashboard")
    assert is_tier_exempt("/settings")
    assert is_tier_exempt("/settings/billing")
    assert not is_tier_exempt("/settingsx")


@pytest.fixture
def app(build_app):
    return build_app()


@pytest.mark.asyncio
async def test_anonymous_protected_page_redirects_to_landing(app, client_for):
    async with client_for(app) as client:
        response = await client.get("/dashboard")
    assert response.status_code == 307
    assert response.headers["location"] == "/"


@pytest.mark.asyncio
async def test_anonymous_public_pages_pass(app, client_for):
    async with client_for(app) as client:
        landing = await client.get("/")
        pricing = await client.get("/pricing")
        health = await client.get("/api/health")
    assert landing.status_code == 200
    assert pricing.status_code == 200
    assert health.json() == {"ok": True}


@pytest.mark.asyncio
async def test_signed_in_user_is_sent_away_from_login(app, client_for, make_subscription):
    await make_subscription("user-1", tier="paid")
    async with client_for(app, user_id="user-1") as client:
        response = await client.get("/login")
    assert response.status_code == 307
    assert response.headers["location"] == "/dashboard"


@pytest.mark.asyncio
async def test_user_without_record_goes_to_pricing(app, client_for):
    async with client_for(app, user_id="brand-new") as client:
        response = await client.get("/dashboard")
    assert response.status_code == 307
    assert response.headers["location"] == "/pricing"


@pytest.mark.asyncio
async def test_unpaid_user_goes_to_pricing(app, client_for, make_subscription):
    await make_subscription("user-1", tier="unpaid")
    async with client_for(app, user_id="user-1") as client:
        response = await client.get("/dashboard")
    assert response.status_code == 307
    assert response.headers["location"] == "/pricing"


@pytest.mark.asyncio
async def test_unpaid_user_can_still_manage_billing(app, client_for, make_subscription):
    await make_subscription("user-1", tier="unpaid")
    async with client_for(app, user_id="user-1", email="u1@example.com") as client:
        response = await client.get("/settings")
    assert response.status_code == 200
    assert response.json()["email"] == "u1@example.com"


@pytest.mark.asyncio
@pytest.mark.parametrize("tier", ["free", "trial", "paid"])
async def test_dashboard_tiers_pass(tier, app, client_for, make_subscription):
    await make_subscription("user-1", tier=tier, trial_ends_at=utc_now() + timedelta(days=2))
    async with client_for(app, user_id="user-1") as client:
        response = await client.get("/dashboard")
    assert response.status_code == 200
    data = response.json()
    assert data["tier"] == tier
    assert data["degraded"] is False


@pytest.mark.asyncio
async def test_macro_tracker_requires_premium_tier(app, client_for, make_subscription):
    await make_subscription("free-user", tier="free")
    await make_subscription("trial-user", tier="trial", trial_ends_at=utc_now() + timedelta(days=2))

    async with client_for(app, user_id="free-user") as client:
        denied = await client.get("/macros")
    async with client_for(app, user_id="trial-user") as client:
        allowed = await client.get("/macros")

    assert denied.status_code == 403
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_store_failure_fails_closed_to_free(test_settings, tmp_path):
    """
    When the subscription store cannot answer, the caller is treated as tier
    free: the dashboard still loads, premium features stay locked.
    """
    # A database with no tables: every subscription query errors
    broken_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'broken.db'}")
    broken_factory = async_sessionmaker(broken_engine, class_=AsyncSession, expire_on_commit=False)
    app = create_app(test_settings, session_factory=broken_factory)

    cookies = {ACCESS_COOKIE: create_access_token("user-1")}
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver", cookies=cookies) as client:
        dashboard = await client.get("/dashboard")
        macros = await client.get("/macros")
    await broken_engine.dispose()

    assert dashboard.status_code == 200
    assert dashboard.json()["tier"] == "free"
    assert dashboard.json()["degraded"] is True
    assert dashboard.json()["capabilities"]["macro-tracker"] is False
    assert macros.status_code == 403


@pytest.mark.asyncio
async def test_static_assets_skip_the_interceptor(app, client_for):
    async with client_for(app) as client:
        response = await client.get("/favicon.ico")
    # No redirect to the landing page even though the path is not public
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_auth_paths_are_rate_limited_per_ip(app, client_for):
    """Ten sign-in callbacks per minute per IP; the eleventh gets 429 with Retry-After."""
    headers = {"X-Forwarded-For": "203.0.113.50"}
    async with client_for(app) as client:
        allowed = [await client.get("/auth/callback", headers=headers) for _ in range(10)]
        limited = await client.get("/auth/callback", headers=headers)
        other_ip = await client.get("/auth/callback", headers={"X-Forwarded-For": "203.0.113.51"})
        unlimited_page = await client.get("/pricing", headers=headers)

    assert [r.status_code for r in allowed] == [200] * 10
    assert allowed[0].headers["X-RateLimit-Remaining"] == "9"
    assert allowed[-1].headers["X-RateLimit-Remaining"] == "0"
    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "60"
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert other_ip.status_code == 200
    assert unlimited_page.status_code == 200
    assert "X-RateLimit-Remaining" not in unlimited_page.headers


@pytest.mark.asyncio
async def test_expired_access_token_is_rotated_with_refresh_token(app, make_subscription):
    """
    An expired access token with a valid refresh token still gets through,
    and the response carries a new session cookie pair.
    """
    await make_subscription("user-1", tier="paid")
    cookies = {
        ACCESS_COOKIE: create_expired_token("user-1", "access", expired_seconds_ago=60),
        REFRESH_COOKIE: create_refresh_token("user-1", "u1@example.com"),
    }
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver", cookies=cookies) as client:
        response = await client.get("/dashboard")

    assert response.status_code == 200
    new_access = response.cookies.get(ACCESS_COOKIE)
    assert new_access
    assert decode_token(new_access, "access")["sub"] == "user-1"
    assert response.cookies.get(REFRESH_COOKIE)


@pytest.mark.asyncio
async def test_rotated_cookies_are_written_on_redirects(app):
    cookies = {
        ACCESS_COOKIE: create_expired_token("user-1", "access"),
        REFRESH_COOKIE: create_refresh_token("user-1"),
    }
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver", cookies=cookies) as client:
        response = await client.get("/login")

    assert response.status_code == 307
    assert response.cookies.get(ACCESS_COOKIE)


@pytest.mark.asyncio
async def test_fully_expired_session_is_anonymous(app):
    cookies = {
        ACCESS_COOKIE: create_expired_token("user-1", "access"),
        REFRESH_COOKIE: create_expired_token("user-1", "refresh"),
    }
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver", cookies=cookies) as client:
        response = await client.get("/dashboard")
    assert response.status_code == 307
    assert response.headers["location"] == "/"


@pytest.mark.asyncio
async def test_security_headers_are_set(app, client_for):
    async with client_for(app) as client:
        response = await client.get("/")
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "Strict-Transport-Security" not in response.headers
