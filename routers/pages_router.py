"""
Pages Router - JSON stand-ins for the rendered pages.

Redirects (anonymous -> landing, no dashboard tier -> pricing, signed in
-> away from login) happen in AccessGateMiddleware before these run.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import AuthenticatedUser, get_current_user, get_optional_user
from crud.journal import JournalRepository
from database import get_db
from routers.dependencies import get_access_record, require_feature
from services.tier_policy import MACRO_TRACKER, capability_map
from utils.responses import error_response, success_response

pages_router = APIRouter(tags=["pages"])


@pages_router.get("/")
async def landing(user=Depends(get_optional_user)):
    return success_response({"page": "landing", "signedIn": user is not None})


@pages_router.get("/login")
async def login():
    return success_response({"page": "login"})


@pages_router.get("/auth/callback")
async def auth_callback():
    return success_response({"page": "auth-callback"})


@pages_router.get("/pricing")
async def pricing(user=Depends(get_optional_user)):
    return success_response({"page": "pricing", "signedIn": user is not None})


@pages_router.get("/about")
async def about():
    return success_response({"page": "about"})


@pages_router.get("/dashboard")
async def dashboard(
    user: AuthenticatedUser = Depends(get_current_user),
    record=Depends(get_access_record),
):
    """Tier and capabilities as the interceptor resolved them."""
    return success_response({
        "page": "dashboard",
        "tier": record.tier,
        "degraded": bool(getattr(record, "degraded", False)),
        "capabilities": capability_map(record),
    })


@pages_router.get("/settings")
async def settings_page(user: AuthenticatedUser = Depends(get_current_user)):
    return success_response({"page": "settings", "email": user.email})


@pages_router.get("/macros")
async def macros(record=Depends(require_feature(MACRO_TRACKER))):
    return success_response({"page": "macros", "tier": record.tier})


@pages_router.get("/share/{slug}")
async def shared_edge(slug: str, db: AsyncSession = Depends(get_db)):
    """Read-only view of an edge its owner made public."""
    edge = await JournalRepository(db).get_public_edge(slug)
    if edge is None:
        return error_response("Not found", status=404, code="notFound")
    return success_response({
        "page": "share",
        "edge": {"name": edge.name, "description": edge.description, "symbol": edge.symbol},
    })
