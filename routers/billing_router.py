"""
Billing Router - subscription status and the Stripe billing portal
"""
import logging

import stripe
from fastapi import APIRouter, Depends, Request

from auth_utils import AuthenticatedUser, get_current_user
from crud.subscription import SubscriptionRepository
from routers.dependencies import get_subscription_repository
from services.tier_policy import capability_map
from utils.errors import ProviderUnavailableError, api_error
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

billing_router = APIRouter(prefix="/api", tags=["billing"])


@billing_router.post("/billing/portal")
async def create_portal_session(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """
    Open the Stripe billing portal for the caller's own customer.

    Returns:
        {"success": true, "portalUrl": ...}; in simulator mode a local
        settings URL with "mock": true
    """
    record = await repository.get_by_user_id(user.id)
    if record is None or not record.stripe_customer_id:
        return error_response("No billing account found", status=400, code="validation")

    provider = request.app.state.card_checkout
    try:
        portal_url = await provider.billing_portal_url(record)
    except stripe.APIConnectionError as e:
        logger.error(f"Billing portal error: {e}")
        return api_error(ProviderUnavailableError("Payment provider is unreachable. Please try again."))
    except stripe.StripeError as e:
        logger.error(f"Billing portal error: {e}", exc_info=True)
        return error_response("Failed to create billing portal session", status=500, code="server")

    content = {"success": True, "portalUrl": portal_url}
    if provider.mock:
        content["mock"] = True
    return success_response(content)


@billing_router.get("/subscription")
async def get_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """The caller's subscription record plus what it unlocks."""
    record = await repository.get_by_user_id(user.id)
    if record is None:
        return error_response("No subscription found", status=404, code="notFound")
    return success_response({"subscription": record.to_dict(), "capabilities": capability_map(record)})
