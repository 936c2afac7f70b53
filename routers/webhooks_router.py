"""
Webhooks Router - payment provider callbacks (NOWPayments IPN and Stripe)

Both endpoints authenticate the sender by signature only; there is no user
session on these requests.
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings
from crud.subscription import SubscriptionRepository
from routers.dependencies import get_settings, get_subscription_repository
from services.webhook_service import (
    WebhookService,
    verify_nowpayments_signature,
    verify_stripe_payload,
)
from utils.errors import MalformedWebhookError, WebhookSignatureError
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

NOWPAYMENTS_SIGNATURE_HEADER = "x-nowpayments-sig"
STRIPE_SIGNATURE_HEADER = "stripe-signature"


@webhooks_router.post("/nowpayments")
async def nowpayments_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """
    NOWPayments IPN callback.

    Verifies the HMAC-SHA512 signature over the sorted-key JSON body, then
    mirrors the payment status onto the subscription record. A paying status
    grants a 30-day paid period.
    """
    ipn_secret = settings.nowpayments_ipn_secret
    if not ipn_secret:
        logger.error("[NOWPayments Webhook] NOWPAYMENTS_IPN_SECRET is not set")
        return error_response("Webhook not configured", status=503, code="network")

    signature = request.headers.get(NOWPAYMENTS_SIGNATURE_HEADER)
    if not signature:
        logger.warning("[NOWPayments Webhook] Missing signature header")
        return error_response("Missing signature", status=400, code="validation")

    raw = await request.body()
    try:
        body = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        logger.warning("[NOWPayments Webhook] Body is not valid JSON")
        return error_response("Invalid JSON", status=400, code="validation")
    if not isinstance(body, dict):
        return error_response("Invalid JSON", status=400, code="validation")

    if not verify_nowpayments_signature(body, signature, ipn_secret):
        logger.warning("[NOWPayments Webhook] Invalid signature")
        return error_response("Invalid signature", status=403, code="auth")

    service = WebhookService(repository)
    try:
        await service.apply_nowpayments_event(body)
        await repository.db.commit()
    except MalformedWebhookError as e:
        logger.warning(f"[NOWPayments Webhook] {e}")
        return error_response(str(e), status=400, code="validation")
    except SQLAlchemyError as e:
        logger.error(f"[NOWPayments Webhook] Database error: {e}")
        await repository.db.rollback()
        return error_response("Database error", status=500, code="server")

    return success_response({"ok": True})


@webhooks_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
):
    """
    Stripe webhook.

    Handles checkout.session.completed, customer.subscription.updated,
    customer.subscription.deleted and invoice.payment_failed. Other event
    types are acknowledged and logged.
    """
    webhook_secret = settings.stripe_webhook_secret
    if not webhook_secret or not settings.stripe_secret_key:
        logger.error("[Stripe Webhook] Stripe is not configured")
        return error_response("Webhook not configured", status=503, code="network")

    signature = request.headers.get(STRIPE_SIGNATURE_HEADER)
    if not signature:
        logger.warning("[Stripe Webhook] Missing Stripe-Signature header")
        return error_response("Missing signature", status=400, code="validation")

    payload = await request.body()
    try:
        event = verify_stripe_payload(payload, signature, webhook_secret)
    except WebhookSignatureError:
        logger.warning("[Stripe Webhook] Invalid signature")
        return error_response("Invalid signature", status=403, code="auth")
    except MalformedWebhookError as e:
        logger.warning(f"[Stripe Webhook] {e}")
        return error_response("Invalid payload", status=400, code="validation")

    service = WebhookService(repository, request.app.state.price_map)
    try:
        await service.apply_stripe_event(event)
        await repository.db.commit()
    except SQLAlchemyError as e:
        logger.error(f"[Stripe Webhook] Database error handling {event.get('type')}: {e}")
        await repository.db.rollback()
        return error_response("Webhook handler failed", status=500, code="server")

    return success_response({"received": True})
