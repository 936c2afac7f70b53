"""
Request interceptor - runs before every non-static request, resolves the
session and subscription tier, and redirects callers who may not see the
requested page.
"""
import logging
from typing import Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from auth_utils import resolve_session, apply_session_cookies
from crud.subscription import SubscriptionRepository
from database import AsyncSessionLocal
from services.tier_policy import DASHBOARD, can_access, lookup_access_record
from utils.rate_limit import get_client_ip

logger = logging.getLogger(__name__)

# Path classes
PUBLIC = "public"
PUBLIC_API = "public-api"
AUTH_ONLY = "auth-only"
PROTECTED = "protected"

PUBLIC_PATHS = frozenset({"/", "/login", "/auth/callback", "/pricing", "/about"})
PUBLIC_PREFIXES = ("/share/",)
# API handlers do their own auth and answer 401/403 instead of redirecting
PUBLIC_API_PREFIXES = ("/api/",)
AUTH_ONLY_PATHS = frozenset({"/login"})
# Protected, but reachable without a qualifying tier (billing management)
TIER_EXEMPT_PREFIXES = ("/settings",)

STATIC_PREFIXES = ("/static/", "/_next/static/", "/_next/image")
STATIC_FILES = frozenset({"/favicon.ico"})
STATIC_SUFFIXES = (".svg", ".png", ".jpg", ".jpeg", ".gif", ".webp")

LANDING_PATH = "/"
DASHBOARD_PATH = "/dashboard"
UPSELL_PATH = "/pricing"

# Sign-in callbacks: 10 requests per minute per IP
AUTH_RATE_LIMITED_PREFIX = "/auth"
AUTH_LIMIT_PER_MINUTE = 10
AUTH_RETRY_AFTER_SECONDS = 60


def is_static_path(path: str) -> bool:
    return (
        path in STATIC_FILES
        or path.startswith(STATIC_PREFIXES)
        or path.lower().endswith(STATIC_SUFFIXES)
    )


def classify_path(path: str) -> str:
    """Map a request path to public, public-api, auth-only or protected."""
    if path in AUTH_ONLY_PATHS:
        return AUTH_ONLY
    if path.startswith(PUBLIC_API_PREFIXES):
        return PUBLIC_API
    if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
        return PUBLIC
    return PROTECTED


def is_tier_exempt(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in TIER_EXEMPT_PREFIXES)


class AccessGateMiddleware(BaseHTTPMiddleware):
    """
    Anonymous + protected -> landing page.
    Authenticated + auth-only (login) -> dashboard.
    Authenticated + protected -> subscription lookup; tiers without
    dashboard access go to pricing. A failed lookup counts as tier free.

    Rotated session cookies are written onto every response, redirects
    included.
    /auth paths are rate limited per IP before the session is resolved.
    """

    async def _lookup_record(self, request: Request, user_id: str):
        session_factory = getattr(request.app.state, "session_factory", AsyncSessionLocal)
        async with session_factory() as session:
            return await lookup_access_record(SubscriptionRepository(session), user_id)

    def _redirect(self, target: str, resolution) -> Response:
        response = RedirectResponse(url=target, status_code=307)
        return apply_session_cookies(response, resolution)

    async def _limit_auth(self, request: Request) -> Tuple[Optional[Response], Optional[int]]:
        """Returns (429 response, None) over the limit, else (None, tokens left)."""
        allowed, remaining = await request.app.state.auth_limiter.take(get_client_ip(request))
        if allowed:
            return None, remaining
        logger.warning(f"Auth rate limit exceeded on {request.url.path}")
        return PlainTextResponse(
            "Too Many Requests",
            status_code=429,
            headers={"Retry-After": str(AUTH_RETRY_AFTER_SECONDS), "X-RateLimit-Remaining": "0"},
        ), None

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if is_static_path(path):
            return await call_next(request)

        remaining = None
        if path.startswith(AUTH_RATE_LIMITED_PREFIX):
            limited, remaining = await self._limit_auth(request)
            if limited is not None:
                return limited

        response = await self._gate(request, call_next, path)
        if remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    async def _gate(self, request: Request, call_next, path: str) -> Response:
        resolution = resolve_session(request.cookies)
        request.state.session = resolution
        request.state.subscription = None
        user = resolution.user
        path_class = classify_path(path)

        if user is not None and path_class == AUTH_ONLY:
            return self._redirect(DASHBOARD_PATH, resolution)

        if user is None and path_class == PROTECTED:
            return self._redirect(LANDING_PATH, resolution)

        if user is not None and path_class == PROTECTED and not is_tier_exempt(path):
            record = await self._lookup_record(request, user.id)
            request.state.subscription = record
            if not can_access(record, DASHBOARD):
                tier: Optional[str] = getattr(record, "tier", None)
                logger.info(f"Tier '{tier}' lacks dashboard access, redirecting to {UPSELL_PATH}")
                return self._redirect(UPSELL_PATH, resolution)

        response = await call_next(request)
        return apply_session_cookies(response, resolution)
