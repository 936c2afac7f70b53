"""
Checkout Router - starts card (Stripe or simulator) and crypto checkouts
"""
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from auth_utils import AuthenticatedUser, get_current_user
from config.settings import PLAN_RETAIL, TIER_UNPAID, PROVIDER_NOWPAYMENTS
from crud.subscription import SubscriptionRepository
from routers.dependencies import get_subscription_repository
from services.checkout_providers import CHECKOUT_PLANS
from services.tier_policy import check_checkout_admission
from utils.errors import (
    AlreadySubscribedError,
    ProviderNotConfiguredError,
    ProviderResponseError,
    ProviderUnavailableError,
    api_error,
)
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

checkout_router = APIRouter(prefix="/api/checkout", tags=["checkout"])


class CheckoutRequest(BaseModel):
    tier: Optional[str] = None


def already_subscribed_response():
    # Distinct code so the client redirects instead of showing an error
    return error_response(
        "Already subscribed",
        status=400,
        code="already_subscribed",
        data={"redirect": "/dashboard"},
    )


@checkout_router.post("")
async def create_checkout(
    request: Request,
    body: Optional[CheckoutRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """
    Start a card checkout for one of the paid plans.

    With Stripe configured this returns a hosted Checkout URL; without it the
    simulator grants a 7-day trial and returns a dashboard URL.
    """
    plan = body.tier if body else None
    if plan == PLAN_RETAIL:
        return error_response("The retail tier is free and needs no checkout", status=400, code="validation")
    if plan not in CHECKOUT_PLANS:
        return error_response("Invalid tier", status=400, code="validation")

    record = await repository.get_by_user_id(user.id)
    try:
        check_checkout_admission(record)
    except AlreadySubscribedError:
        return already_subscribed_response()

    provider = request.app.state.card_checkout
    try:
        result = await provider.start_checkout(user, plan, record, repository)
        await repository.db.commit()
    except stripe.APIConnectionError as e:
        logger.error(f"Checkout error: {e}")
        return api_error(ProviderUnavailableError("Payment provider is unreachable. Please try again."))
    except stripe.StripeError as e:
        logger.error(f"Checkout error: {e}", exc_info=True)
        return error_response("Failed to create checkout session", status=500, code="server")

    content = {"url": result.url}
    if result.mock:
        content["mock"] = True
    return success_response(content)


@checkout_router.post("/crypto")
async def create_crypto_checkout(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """Create a NOWPayments invoice for one month and return its URL."""
    client = request.app.state.crypto_client
    if client is None:
        logger.error("[Crypto Checkout] NOWPAYMENTS_API_KEY is not configured")
        return api_error(ProviderNotConfiguredError("Crypto payments are not configured"))

    record = await repository.get_by_user_id(user.id)
    try:
        check_checkout_admission(record)
    except AlreadySubscribedError:
        return already_subscribed_response()

    try:
        invoice = await client.create_invoice(user.id)
    except ProviderUnavailableError as e:
        return api_error(e)
    except ProviderResponseError as e:
        logger.error(f"[Crypto Checkout] {e}")
        return error_response("Failed to create payment invoice", status=502, code="server")

    values = {
        "payment_provider": PROVIDER_NOWPAYMENTS,
        "payment_id": str(invoice.id),
        "payment_status": "waiting",
    }
    if record is None:
        values["tier"] = TIER_UNPAID
    await repository.upsert(user.id, values)
    await repository.db.commit()

    return success_response({"url": invoice.invoice_url})
