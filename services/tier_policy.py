"""
Tier Policy Engine - decides what a subscription tier may reach and which
tier a record should hold at a given moment.

Everything here except lookup_access_record is pure: no I/O, no clock reads.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from config.settings import (
    TIER_UNPAID,
    TIER_FREE,
    TIER_TRIAL,
    TIER_PAID,
    PROVIDER_NOWPAYMENTS,
)
from utils.errors import AlreadySubscribedError

logger = logging.getLogger(__name__)

TIERS = (TIER_UNPAID, TIER_FREE, TIER_TRIAL, TIER_PAID)

# Features
FORWARDTEST_TRACKING = "forwardtest-tracking"
BACKTEST_LOGGING = "backtest-logging"
MACRO_TRACKER = "macro-tracker"
UNLIMITED_EDGES = "unlimited-edges"
AI_PARSER = "ai-parser"
DASHBOARD = "dashboard"

PREMIUM_TIERS = frozenset({TIER_TRIAL, TIER_PAID})

# Free keeps limited forward-test logging; its 1 edge / 7-day history cap is
# enforced where edges are created, not here.
FEATURE_TIERS = {
    FORWARDTEST_TRACKING: frozenset({TIER_TRIAL, TIER_PAID, TIER_FREE}),
    BACKTEST_LOGGING: PREMIUM_TIERS,
    MACRO_TRACKER: PREMIUM_TIERS,
    UNLIMITED_EDGES: PREMIUM_TIERS,
    AI_PARSER: PREMIUM_TIERS,
    DASHBOARD: frozenset({TIER_PAID, TIER_TRIAL, TIER_FREE}),
}

FEATURES = tuple(FEATURE_TIERS)

# Tier granted when the store cannot answer. Never a premium tier.
FAIL_CLOSED_TIER = TIER_FREE

EXPIRED_PAYMENT_STATUS = "expired"


@dataclass(frozen=True)
class FailClosedRecord:
    """Stand-in returned when the subscription lookup fails."""
    user_id: str
    tier: str = FAIL_CLOSED_TIER
    degraded: bool = True


def can_access(record: Optional[Any], feature: str) -> bool:
    """
    May the holder of this record reach the given feature?

    Args:
        record: anything with a ``tier`` attribute (an ORM row, a
            FailClosedRecord); None means "no subscription" and is denied
        feature: one of FEATURES; anything else is denied

    Returns:
        True if the tier is allowed for the feature
    """
    if record is None:
        return False
    allowed = FEATURE_TIERS.get(feature)
    if not allowed:
        return False
    return getattr(record, "tier", None) in allowed


def capability_map(record: Optional[Any]) -> Dict[str, bool]:
    return {feature: can_access(record, feature) for feature in FEATURES}


def pending_transition(record: Any, now: datetime) -> Dict[str, Any]:
    """
    Field changes the record needs at ``now``; empty when it is already correct.

    Only downgrades live here. Upgrades happen through checkout and webhooks.
    """
    tier = getattr(record, "tier", None)

    if tier == TIER_TRIAL:
        trial_ends_at = getattr(record, "trial_ends_at", None)
        # Ending exactly at now counts as ended, here and in the sweep
        if trial_ends_at is not None and trial_ends_at <= now:
            return {"tier": TIER_FREE}

    if tier == TIER_PAID and getattr(record, "payment_provider", None) == PROVIDER_NOWPAYMENTS:
        period_end = getattr(record, "current_period_end", None)
        if period_end is not None and period_end <= now:
            return {"tier": TIER_UNPAID, "payment_status": EXPIRED_PAYMENT_STATUS}

    return {}


def next_tier(record: Any, now: datetime) -> str:
    """The tier this record should hold at ``now``."""
    return pending_transition(record, now).get("tier", getattr(record, "tier", None))


def apply_transition(record: Any, now: datetime) -> Dict[str, Any]:
    """Apply pending_transition in place; returns the changes made."""
    changes = pending_transition(record, now)
    for field, value in changes.items():
        setattr(record, field, value)
    return changes


def check_checkout_admission(record: Optional[Any]) -> None:
    """
    Reject a second checkout from someone who is already paying.

    Raises:
        AlreadySubscribedError: if the record is at tier paid
    """
    if record is not None and getattr(record, "tier", None) == TIER_PAID:
        raise AlreadySubscribedError("Already subscribed")


async def lookup_access_record(repository, user_id: str):
    """
    Fetch the record used for access decisions.

    A store failure is logged and answered with a FailClosedRecord (tier
    free). A missing row is returned as None.
    """
    try:
        return await repository.get_by_user_id(user_id)
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Subscription lookup failed, falling back to '{FAIL_CLOSED_TIER}': {e}", exc_info=True)
        return FailClosedRecord(user_id=user_id)
