"""
Card checkout providers.

The rail is picked once when the app is built: StripeCheckoutProvider when
STRIPE_SECRET_KEY is set, SimulatedCheckoutProvider otherwise. Handlers only
see the CardCheckoutProvider interface.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

import stripe

from config.settings import (
    Settings,
    TIER_UNPAID,
    TIER_TRIAL,
    PLAN_TRADER,
    PLAN_INNER_CIRCLE,
)
from crud.subscription import SubscriptionRepository
from auth_utils import AuthenticatedUser
from database_models import SubscriptionRecord, utc_now

logger = logging.getLogger(__name__)

CHECKOUT_PLANS = (PLAN_TRADER, PLAN_INNER_CIRCLE)

SIMULATED_TRIAL_DAYS = 7
STRIPE_MAX_NETWORK_RETRIES = 2


@dataclass
class CheckoutResult:
    url: str
    mock: bool = False


class PriceTierMap:
    """
    Explicit Stripe price id -> plan table, built from configuration.
    """

    def __init__(self, prices: Dict[str, str]):
        self._by_price = dict(prices)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceTierMap":
        configured = {
            PLAN_TRADER: settings.stripe_price_trader,
            PLAN_INNER_CIRCLE: settings.stripe_price_inner_circle,
        }
        missing = [plan for plan, price in configured.items() if not price]
        if missing:
            raise RuntimeError(f"Stripe is configured but no price id is set for: {', '.join(missing)}")
        if len(set(configured.values())) != len(configured):
            raise RuntimeError("Stripe price ids must be distinct per plan")
        return cls({price: plan for plan, price in configured.items()})

    def plan_for(self, price_id: Optional[str]) -> Optional[str]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def price_for(self, plan: str) -> Optional[str]:
        for price_id, mapped_plan in self._by_price.items():
            if mapped_plan == plan:
                return price_id
        return None


class CardCheckoutProvider:
    """Interface for the card rail."""

    mock = False

    async def start_checkout(
        self,
        user: AuthenticatedUser,
        plan: str,
        record: Optional[SubscriptionRecord],
        repository: SubscriptionRepository,
    ) -> CheckoutResult:
        raise NotImplementedError

    async def billing_portal_url(self, record: SubscriptionRecord) -> str:
        raise NotImplementedError


class SimulatedCheckoutProvider(CardCheckoutProvider):
    """
    Local stand-in used when Stripe is not configured: starting a checkout
    grants a 7-day trial directly.
    """

    mock = True

    async def start_checkout(self, user, plan, record, repository):
        now = utc_now()
        if record is not None and record.trial_started_at is not None:
            # Trial window is set once; a second checkout only updates the plan
            values = {"plan": plan}
            if record.trial_ends_at and record.trial_ends_at > now:
                values["tier"] = TIER_TRIAL
            await repository.upsert(user.id, values)
            logger.info("[MOCK] Trial already granted for this user, window left unchanged")
        else:
            await repository.upsert(
                user.id,
                {
                    "tier": TIER_TRIAL,
                    "plan": plan,
                    "trial_started_at": now,
                    "trial_ends_at": now + timedelta(days=SIMULATED_TRIAL_DAYS),
                },
            )
            logger.info(f"[MOCK] Started {SIMULATED_TRIAL_DAYS}-day {plan} trial without a payment provider")
        return CheckoutResult(url="/dashboard?upgraded=true&mock=true", mock=True)

    async def billing_portal_url(self, record):
        logger.info("[MOCK] Stripe not configured, returning mock portal URL")
        return "/settings?billing=mock"


class StripeCheckoutProvider(CardCheckoutProvider):
    """
    Stripe subscriptions through hosted Checkout. The SDK is synchronous, so
    calls run in a worker thread.
    """

    def __init__(self, api_key: str, app_url: str, prices: PriceTierMap):
        self.api_key = api_key
        self.app_url = app_url.rstrip("/")
        self.prices = prices

    async def _call(self, func, **params):
        # Per-request key keeps the module-level stripe.api_key untouched
        return await asyncio.to_thread(func, api_key=self.api_key, **params)

    async def start_checkout(self, user, plan, record, repository):
        price_id = self.prices.price_for(plan)
        if not price_id:
            raise ValueError(f"Invalid plan: {plan}")

        customer_id = record.stripe_customer_id if record else None
        if not customer_id:
            customer = await self._call(
                stripe.Customer.create,
                email=user.email,
                metadata={"user_id": user.id},
            )
            customer_id = customer["id"]
            values = {"stripe_customer_id": customer_id}
            if record is None:
                values["tier"] = TIER_UNPAID
            await repository.upsert(user.id, values)

        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{self.app_url}/dashboard?upgraded=true",
            cancel_url=f"{self.app_url}/pricing",
            metadata={"user_id": user.id, "tier": plan},
            subscription_data={"metadata": {"user_id": user.id, "tier": plan}},
        )
        logger.info(f"Created Stripe checkout session for plan={plan}")
        return CheckoutResult(url=session["url"])

    async def billing_portal_url(self, record):
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=record.stripe_customer_id,
            return_url=f"{self.app_url}/settings",
        )
        return session["url"]


def select_card_provider(settings: Settings) -> CardCheckoutProvider:
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set. Card checkout runs in simulator mode.")
        return SimulatedCheckoutProvider()
    # SDK-wide setting, applies to every Stripe request
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
    return StripeCheckoutProvider(
        api_key=settings.stripe_secret_key,
        app_url=settings.app_url,
        prices=PriceTierMap.from_settings(settings),
    )


def price_map_for(settings: Settings) -> Optional[PriceTierMap]:
    """The price table used by the Stripe webhook, None when Stripe is off."""
    if not settings.stripe_secret_key:
        return None
    return PriceTierMap.from_settings(settings)

