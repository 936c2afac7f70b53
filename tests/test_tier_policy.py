"""
Unit tests for the tier policy engine: feature access, tier transitions and
the fail-closed lookup.
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from services.tier_policy import (
    AI_PARSER,
    BACKTEST_LOGGING,
    DASHBOARD,
    FEATURES,
    FORWARDTEST_TRACKING,
    MACRO_TRACKER,
    UNLIMITED_EDGES,
    FailClosedRecord,
    apply_transition,
    can_access,
    capability_map,
    check_checkout_admission,
    lookup_access_record,
    next_tier,
    pending_transition,
)
from utils.errors import AlreadySubscribedError

NOW = datetime(2025, 3, 1, 12, 0, 0)


def record(**fields):
    base = {
        "tier": "unpaid",
        "trial_ends_at": None,
        "payment_provider": None,
        "payment_status": None,
        "current_period_end": None,
    }
    base.update(fields)
    return SimpleNamespace(**base)


@pytest.mark.parametrize("tier", ["trial", "paid"])
def test_premium_tiers_reach_every_feature(tier):
    assert all(can_access(record(tier=tier), feature) for feature in FEATURES)


def test_free_tier_keeps_forwardtest_and_dashboard_only():
    free = record(tier="free")
    assert can_access(free, FORWARDTEST_TRACKING) is True
    assert can_access(free, DASHBOARD) is True
    for feature in (BACKTEST_LOGGING, MACRO_TRACKER, UNLIMITED_EDGES, AI_PARSER):
        assert can_access(free, feature) is False


def test_unpaid_tier_reaches_nothing():
    assert not any(capability_map(record(tier="unpaid")).values())


def test_missing_record_and_unknown_feature_are_denied():
    """No record means no subscription; a feature name we don't know is never granted."""
    assert can_access(None, FORWARDTEST_TRACKING) is False
    assert can_access(record(tier="paid"), "time-travel") is False
    assert can_access(record(tier="lifetime"), FORWARDTEST_TRACKING) is False


def test_fail_closed_record_behaves_like_free():
    fallback = FailClosedRecord(user_id="user-1")
    assert fallback.tier == "free"
    assert fallback.degraded is True
    assert can_access(fallback, FORWARDTEST_TRACKING) is True
    assert can_access(fallback, MACRO_TRACKER) is False


def test_capability_map_covers_every_feature():
    caps = capability_map(record(tier="free"))
    assert set(caps) == set(FEATURES)


def test_expired_trial_transitions_to_free():
    expired = record(tier="trial", trial_ends_at=NOW - timedelta(seconds=1))
    assert pending_transition(expired, NOW) == {"tier": "free"}
    assert next_tier(expired, NOW) == "free"


def test_trial_ending_exactly_now_is_expired():
    assert next_tier(record(tier="trial", trial_ends_at=NOW), NOW) == "free"


def test_active_trial_is_unchanged():
    active = record(tier="trial", trial_ends_at=NOW + timedelta(days=3))
    assert pending_transition(active, NOW) == {}
    assert next_tier(active, NOW) == "trial"


def test_trial_without_end_date_is_unchanged():
    assert pending_transition(record(tier="trial"), NOW) == {}


def test_lapsed_crypto_period_transitions_to_unpaid_and_marks_expired():
    lapsed = record(
        tier="paid",
        payment_provider="nowpayments",
        current_period_end=NOW - timedelta(minutes=1),
    )
    assert pending_transition(lapsed, NOW) == {"tier": "unpaid", "payment_status": "expired"}


def test_lapsed_stripe_period_is_left_to_stripe():
    """Stripe reports its own lapses through webhooks."""
    stripe_paid = record(
        tier="paid",
        payment_provider="stripe",
        current_period_end=NOW - timedelta(days=2),
    )
    assert pending_transition(stripe_paid, NOW) == {}


@pytest.mark.parametrize("tier", ["unpaid", "free"])
def test_non_expiring_tiers_are_unchanged(tier):
    assert next_tier(record(tier=tier, trial_ends_at=NOW - timedelta(days=9)), NOW) == tier


def test_apply_transition_mutates_and_reports():
    lapsed = record(tier="paid", payment_provider="nowpayments", current_period_end=NOW - timedelta(days=1))
    changes = apply_transition(lapsed, NOW)
    assert changes["tier"] == "unpaid"
    assert lapsed.tier == "unpaid"
    assert lapsed.payment_status == "expired"
    assert apply_transition(lapsed, NOW) == {}


def test_checkout_admission_rejects_paid_only():
    with pytest.raises(AlreadySubscribedError):
        check_checkout_admission(record(tier="paid"))
    for tier in ("unpaid", "free", "trial"):
        check_checkout_admission(record(tier=tier))
    check_checkout_admission(None)


class _FailingRepository:
    async def get_by_user_id(self, user_id):
        raise OperationalError("SELECT", {}, Exception("connection refused"))


class _EmptyRepository:
    async def get_by_user_id(self, user_id):
        return None


@pytest.mark.asyncio
async def test_lookup_falls_back_to_free_on_store_error():
    """
    A store failure must never surface as a premium tier or as an error to
    the caller: the lookup answers with tier free.
    """
    result = await lookup_access_record(_FailingRepository(), "user-1")
    assert isinstance(result, FailClosedRecord)
    assert result.tier == "free"
    assert result.user_id == "user-1"


@pytest.mark.asyncio
async def test_lookup_returns_none_for_missing_row():
    assert await lookup_access_record(_EmptyRepository(), "user-1") is None
