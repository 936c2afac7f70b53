"""
Cron Router - scheduled jobs triggered over HTTP by the platform scheduler.

Every job requires ``Authorization: Bearer {CRON_SECRET}``.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings
from crud.subscription import SubscriptionRepository
from routers.dependencies import get_settings, get_subscription_repository
from services.subscription_sweep import SubscriptionSweep
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

cron_router = APIRouter(prefix="/api", tags=["cron"])


def check_cron_authorization(request: Request, cron_secret: Optional[str]) -> Optional[JSONResponse]:
    """Returns an error response when the caller is not the scheduler, else None."""
    if not cron_secret:
        logger.error("[Cron] CRON_SECRET is not configured")
        return error_response("Cron secret not configured", status=500, code="server")

    received = request.headers.get("authorization", "").encode("utf-8")
    expected = f"Bearer {cron_secret}".encode("utf-8")
    if not hmac.compare_digest(received, expected):
        logger.warning("[Cron] Unauthorized cron request")
        return error_response("Unauthorized", status=401, code="auth")
    return None


@cron_router.get("/cron/check-subscriptions")
async def check_subscriptions(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """
    Expire lapsed trials (trial -> free) and lapsed crypto periods
    (paid -> unpaid). Safe to run any number of times.
    """
    denied = check_cron_authorization(request, settings.cron_secret)
    if denied is not None:
        return denied

    try:
        result = await SubscriptionSweep(repository).run()
        await repository.db.commit()
    except SQLAlchemyError as e:
        logger.error(f"[Cron] Subscription check failed: {e}")
        await repository.db.rollback()
        return error_response("Failed to check subscriptions", status=500, code="server")

    return success_response({"success": True, **result.to_dict()})

