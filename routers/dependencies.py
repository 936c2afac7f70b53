"""
Shared FastAPI dependencies for routers
"""
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import AuthenticatedUser, get_current_user
from config.settings import Settings, settings as default_settings
from crud.subscription import SubscriptionRepository
from database import get_db
from services.tier_policy import can_access, lookup_access_record


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", default_settings)


async def get_subscription_repository(db: AsyncSession = Depends(get_db)) -> SubscriptionRepository:
    return SubscriptionRepository(db)


async def get_access_record(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """The caller's record for access checks; reuses the interceptor's lookup."""
    record = getattr(request.state, "subscription", None)
    if record is None:
        record = await lookup_access_record(repository, user.id)
    return record


def require_feature(feature: str):
    """Dependency factory: 403 unless the caller's tier can reach ``feature``."""

    async def dependency(record=Depends(get_access_record)):
        if not can_access(record, feature):
            raise HTTPException(status_code=403, detail=f"Upgrade required for {feature}")
        return record

    return dependency
