"""
Session utilities: the auth provider's JWT session cookies, their silent
refresh/rotation, and the FastAPI dependencies that resolve the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional, Tuple

import jwt
from fastapi import HTTPException, Request

from config.settings import settings
from database_models import utc_now

logger = logging.getLogger(__name__)

# JWT configuration
ALGORITHM = "HS256"

ACCESS_COOKIE = "sb-access-token"
REFRESH_COOKIE = "sb-refresh-token"

ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=30)
# Access tokens this close to expiry are re-minted on the next pass
REFRESH_MARGIN = timedelta(minutes=10)


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


@dataclass
class SessionResolution:
    """Who the caller is, and which cookies must be written back."""
    user: Optional[AuthenticatedUser] = None
    cookies: List[Tuple[str, str, int]] = field(default_factory=list)


def _secret() -> str:
    if not settings.auth_jwt_secret:
        raise ValueError("AUTH_JWT_SECRET is not set. Cannot handle session tokens.")
    return settings.auth_jwt_secret


def _encode(user_id: str, email: Optional[str], token_type: str, expires_at: datetime) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "type": token_type,
        "exp": expires_at,
    }
    return jwt.encode(payload, _secret(), algorithm=ALGORITHM)


def create_access_token(user_id: str, email: Optional[str] = None, ttl: timedelta = ACCESS_TOKEN_TTL) -> str:
    """Create an access token for a user"""
    return _encode(user_id, email, "access", utc_now() + ttl)


def create_refresh_token(user_id: str, email: Optional[str] = None, ttl: timedelta = REFRESH_TOKEN_TTL) -> str:
    return _encode(user_id, email, "refresh", utc_now() + ttl)


def create_expired_token(user_id: str, token_type: str = "access", expired_seconds_ago: int = 1) -> str:
    """
    Create an expired token for testing purposes.

    Raises:
        ValueError: If AUTH_JWT_SECRET is not set
    """
    return _encode(user_id, None, token_type, utc_now() - timedelta(seconds=expired_seconds_ago))


def decode_token(token: str, token_type: str) -> Optional[dict]:
    """Decode a session token. Returns None if invalid, expired or of the wrong type."""
    try:
        payload = jwt.decode(token, _secret(), algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    if payload.get("type") != token_type or not payload.get("sub"):
        return None
    return payload


def _needs_refresh(payload: dict) -> bool:
    expires_at = datetime.fromtimestamp(payload["exp"], timezone.utc).replace(tzinfo=None)
    return expires_at - utc_now() <= REFRESH_MARGIN


def resolve_session(cookies: Mapping[str, str]) -> SessionResolution:
    """
    Resolve the caller from the session cookie pair.

    A valid session always yields a cookie pair to write back: the same
    tokens with a renewed lifetime, or a freshly minted pair when the access
    token is expired or about to expire and the refresh token is still good.
    """
    access = cookies.get(ACCESS_COOKIE)
    refresh = cookies.get(REFRESH_COOKIE)
    if not access and not refresh:
        return SessionResolution()

    try:
        access_payload = decode_token(access, "access") if access else None
        refresh_payload = decode_token(refresh, "refresh") if refresh else None

        if access_payload and not _needs_refresh(access_payload):
            user = AuthenticatedUser(id=str(access_payload["sub"]), email=access_payload.get("email"))
            new_access, new_refresh = access, refresh
        elif refresh_payload:
            user = AuthenticatedUser(id=str(refresh_payload["sub"]), email=refresh_payload.get("email"))
            new_access = create_access_token(user.id, user.email)
            new_refresh = create_refresh_token(user.id, user.email)
        elif access_payload:
            # Close to expiry with no usable refresh token: keep serving until it lapses
            user = AuthenticatedUser(id=str(access_payload["sub"]), email=access_payload.get("email"))
            new_access, new_refresh = access, None
        else:
            return SessionResolution()
    except ValueError as e:
        logger.error(f"Session resolution unavailable: {e}")
        return SessionResolution()

    rotated = [(ACCESS_COOKIE, new_access, int(ACCESS_TOKEN_TTL.total_seconds()))]
    if new_refresh:
        rotated.append((REFRESH_COOKIE, new_refresh, int(REFRESH_TOKEN_TTL.total_seconds())))
    return SessionResolution(user=user, cookies=rotated)


def apply_session_cookies(response, resolution: SessionResolution):
    """Write rotated session cookies onto any response, redirects included."""
    for name, value, max_age in resolution.cookies:
        response.set_cookie(
            key=name,
            value=value,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            max_age=max_age,
            path="/",
        )
    return response


def _session_for(request: Request) -> SessionResolution:
    # The interceptor already resolved the session for this request
    resolution = getattr(request.state, "session", None)
    if resolution is None:
        resolution = resolve_session(request.cookies)
        request.state.session = resolution
    return resolution


async def get_optional_user(request: Request) -> Optional[AuthenticatedUser]:
    return _session_for(request).user


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    Dependency for authenticated API routes.

    API routes answer 401 instead of redirecting; page routes are redirected
    by the interceptor before they get here.
    """
    user = _session_for(request).user
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
