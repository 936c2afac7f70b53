"""
Webhook Service - verifies provider callbacks and applies them to the
subscription store.

Every handler writes the full target state for the event rather than a
delta, so a redelivered event leaves the record exactly as the first
delivery did.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import stripe

from config.settings import (
    TIER_PAID,
    TIER_UNPAID,
    PROVIDER_NOWPAYMENTS,
    PROVIDER_STRIPE,
)
from crud.subscription import SubscriptionRepository
from database_models import SubscriptionRecord, utc_now
from services.checkout_providers import CHECKOUT_PLANS, PriceTierMap
from services.nowpayments_client import ORDER_PREFIX
from utils.errors import MalformedWebhookError, WebhookSignatureError

logger = logging.getLogger(__name__)

# "partially_paid" is accepted: the shortfall is the network fee
NOWPAYMENTS_PAID_STATUSES = frozenset({"finished", "confirmed", "partially_paid"})
CRYPTO_PERIOD = timedelta(days=30)

STRIPE_ACTIVE_STATUSES = frozenset({"active", "trialing"})
STRIPE_SIGNATURE_TOLERANCE_SECONDS = 300


# ============================================================================
# NOWPAYMENTS SIGNATURES
# ============================================================================

def _canonical_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _canonical_value(value[key]) for key in sorted(value)}
    if isinstance(value, float) and value.is_integer():
        # Integral numbers are rendered without a fraction by the signer
        return int(value)
    return value


def canonical_json(body: Dict[str, Any]) -> str:
    """
    Deterministic serialization that NOWPayments signs: object keys sorted
    at every nesting level, compact separators, non-ASCII left as is.
    Array element order is preserved.
    """
    return json.dumps(_canonical_value(body), separators=(",", ":"), ensure_ascii=False)


def compute_nowpayments_signature(body: Dict[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_json(body).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_nowpayments_signature(body: Dict[str, Any], signature: str, secret: str) -> bool:
    """
    Constant-time check of the x-nowpayments-sig header.

    A signature whose length differs from the digest is rejected before any
    byte comparison runs.
    """
    expected = compute_nowpayments_signature(body, secret).encode("utf-8")
    received = signature.encode("utf-8")
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(received, expected)


def user_id_from_order_id(order_id: Any) -> str:
    """
    Extract the user id from an order id of the form edgetracker_{userId}.

    Raises:
        MalformedWebhookError: the order id is not ours
    """
    if not isinstance(order_id, str) or not order_id.startswith(ORDER_PREFIX):
        raise MalformedWebhookError("Invalid order_id")
    user_id = order_id[len(ORDER_PREFIX):]
    if not user_id:
        raise MalformedWebhookError("Invalid order_id")
    return user_id


# ============================================================================
# STRIPE SIGNATURES
# ============================================================================

def verify_stripe_payload(payload: bytes, signature_header: str, secret: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the raw body and return the
    parsed event.

    Raises:
        WebhookSignatureError: signature does not match
        MalformedWebhookError: body is not a JSON object
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedWebhookError("Invalid payload encoding") from e

    try:
        stripe.WebhookSignature.verify_header(
            text,
            signature_header,
            secret,
            tolerance=STRIPE_SIGNATURE_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError("Invalid signature") from e

    try:
        event = json.loads(text)
    except ValueError as e:
        raise MalformedWebhookError("Invalid payload format") from e
    if not isinstance(event, dict) or "type" not in event:
        raise MalformedWebhookError("Invalid payload format")
    return event


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)


class WebhookService:
    """
    Applies verified provider events to the subscription store.
    """

    def __init__(self, repository: SubscriptionRepository, prices: Optional[PriceTierMap] = None):
        """
        Args:
            repository: SubscriptionRepository bound to the privileged session
            prices: Stripe price table; required for subscription updates
        """
        self.repository = repository
        self.prices = prices

    # ------------------------------------------------------------------
    # NOWPayments
    # ------------------------------------------------------------------

    async def apply_nowpayments_event(self, body: Dict[str, Any], now: Optional[datetime] = None) -> SubscriptionRecord:
        """
        Mirror the payment status; grant a 30-day paid period on a paying status.

        A paying status for a payment that already granted a period keeps the
        stored bounds. If that period has lapsed the record is left as the
        sweep left it.
        """
        now = now or utc_now()
        user_id = user_id_from_order_id(body.get("order_id"))
        payment_status = body.get("payment_status")
        payment_id = body.get("payment_id")
        payment_id = str(payment_id) if payment_id is not None else None

        logger.info(f"[NOWPayments Webhook] Status: {payment_status}, Payment: {payment_id}")

        values: Dict[str, Any] = {
            "payment_status": payment_status,
            "payment_id": payment_id,
            "payment_provider": PROVIDER_NOWPAYMENTS,
        }

        if payment_status in NOWPAYMENTS_PAID_STATUSES:
            record = await self.repository.get_by_user_id(user_id)
            if self._granted_by(record, payment_id):
                # The period this payment bought is already on the record
                if record.current_period_end > now:
                    values["tier"] = TIER_PAID
                else:
                    logger.info(f"[NOWPayments Webhook] Payment {payment_id} period already lapsed; record left as is")
                    return record
            else:
                values["tier"] = TIER_PAID
                values["current_period_start"] = now
                values["current_period_end"] = now + CRYPTO_PERIOD
                logger.info("[NOWPayments Webhook] Granting 30-day paid period")

        return await self.repository.upsert(user_id, values)

    @staticmethod
    def _granted_by(record: Optional[SubscriptionRecord], payment_id: Optional[str]) -> bool:
        """Has this payment already granted a period, whatever the tier is now?"""
        return (
            record is not None
            and payment_id is not None
            and record.payment_provider == PROVIDER_NOWPAYMENTS
            and record.payment_id == payment_id
            and record.current_period_start is not None
            and record.current_period_end is not None
        )

    # ------------------------------------------------------------------
    # Stripe
    # ------------------------------------------------------------------

    async def apply_stripe_event(self, event: Dict[str, Any]) -> bool:
        """
        Dispatch a verified Stripe event.

        Returns:
            True if the store was changed, False if the event was only logged
        """
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return await self._checkout_completed(obj)
        if event_type == "customer.subscription.updated":
            return await self._subscription_updated(obj)
        if event_type == "customer.subscription.deleted":
            return await self._subscription_deleted(obj)
        if event_type == "invoice.payment_failed":
            await self._payment_failed(obj)
            return False

        logger.info(f"Unhandled Stripe event type: {event_type}")
        return False

    async def _checkout_completed(self, session: Dict[str, Any]) -> bool:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        if not user_id:
            logger.error("No user ID in checkout session metadata")
            return False

        plan = metadata.get("tier")
        if plan not in CHECKOUT_PLANS:
            logger.warning(f"Checkout session completed with unexpected tier metadata: {plan}")
            plan = None

        values = {
            "tier": TIER_PAID,
            "payment_provider": PROVIDER_STRIPE,
            "stripe_customer_id": session.get("customer"),
            "stripe_subscription_id": session.get("subscription"),
            "payment_id": session.get("subscription") or session.get("id"),
            "payment_status": session.get("payment_status") or "complete",
        }
        if plan:
            values["plan"] = plan
        await self.repository.upsert(user_id, values)
        logger.info(f"Checkout completed, upgraded to paid (plan={plan})")
        return True

    async def _resolve_subscription_owner(self, subscription: Dict[str, Any]) -> Optional[str]:
        user_id = (subscription.get("metadata") or {}).get("user_id")
        if user_id:
            return user_id
        customer_id = subscription.get("customer")
        if customer_id:
            record = await self.repository.get_by_stripe_customer(customer_id)
            if record is not None:
                return record.user_id
        subscription_id = subscription.get("id")
        if subscription_id:
            record = await self.repository.get_by_stripe_subscription(subscription_id)
            if record is not None:
                return record.user_id
        return None

    @staticmethod
    def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
        items = (subscription.get("items") or {}).get("data") or []
        return items[0] if items else {}

    async def _subscription_updated(self, subscription: Dict[str, Any]) -> bool:
        user_id = await self._resolve_subscription_owner(subscription)
        if not user_id:
            logger.error(f"No user found for subscription: {subscription.get('id')}")
            return False

        status = subscription.get("status")
        item = self._first_item(subscription)
        price_id = (item.get("price") or {}).get("id") or (subscription.get("plan") or {}).get("id")
        plan = self.prices.plan_for(price_id) if self.prices else None
        if price_id and plan is None:
            logger.warning(f"Subscription price {price_id} is not in the price table; plan left unchanged")

        # Newer API versions carry the period on the item
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")

        values = {
            "tier": TIER_PAID if status in STRIPE_ACTIVE_STATUSES else TIER_UNPAID,
            "payment_provider": PROVIDER_STRIPE,
            "payment_status": status,
            "stripe_subscription_id": subscription.get("id"),
            "current_period_start": _from_epoch(period_start),
            "current_period_end": _from_epoch(period_end),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }
        if subscription.get("customer"):
            values["stripe_customer_id"] = subscription.get("customer")
        if plan:
            values["plan"] = plan

        await self.repository.upsert(user_id, values)
        logger.info(f"Subscription updated: status={status}, tier={values['tier']}")
        return True

    async def _subscription_deleted(self, subscription: Dict[str, Any]) -> bool:
        record = None
        if subscription.get("id"):
            record = await self.repository.get_by_stripe_subscription(subscription["id"])
        if record is None:
            user_id = (subscription.get("metadata") or {}).get("user_id")
            if user_id:
                record = await self.repository.get_by_user_id(user_id)
        if record is None:
            logger.error(f"No user found for deleted subscription: {subscription.get('id')}")
            return False

        # stripe_subscription_id stays as an audit breadcrumb
        await self.repository.upsert(
            record.user_id,
            {
                "tier": TIER_UNPAID,
                "payment_status": subscription.get("status") or "canceled",
                "cancel_at_period_end": False,
            },
        )
        logger.info("Subscription deleted, downgraded to unpaid")
        return True

    async def _payment_failed(self, invoice: Dict[str, Any]) -> None:
        # Stripe runs its own dunning/grace period; nothing is mirrored locally
        customer_id = invoice.get("customer")
        record = await self.repository.get_by_stripe_customer(customer_id) if customer_id else None
        if record is not None:
            logger.warning(f"Payment failed for user {record.user_id}")
        else:
            logger.warning(f"Payment failed for unknown customer {customer_id}")
