"""
Subscription sweep - catches tier drift that no webhook reports, such as a
trial running out or a crypto period lapsing.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from config.settings import TIER_FREE, TIER_UNPAID
from crud.subscription import SubscriptionRepository
from database_models import utc_now
from services.tier_policy import EXPIRED_PAYMENT_STATUS

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_trials: int
    expired_crypto: int
    checked_at: datetime

    def to_dict(self) -> dict:
        return {
            "expiredTrials": self.expired_trials,
            "expiredCrypto": self.expired_crypto,
            "checkedAt": self.checked_at.isoformat(timespec="milliseconds") + "Z",
        }


class SubscriptionSweep:
    """
    Bulk form of the tier transition function.

    Both updates are conditional on the pre-transition tier, so running the
    sweep twice, or alongside a webhook touching the same row, is a no-op
    for rows that already moved.
    """

    def __init__(self, repository: SubscriptionRepository):
        self.repository = repository

    async def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utc_now()

        expired_trials = await self.repository.expire_trials(now, TIER_FREE)
        expired_crypto = await self.repository.expire_crypto_periods(now, TIER_UNPAID, EXPIRED_PAYMENT_STATUS)

        result = SweepResult(expired_trials=expired_trials, expired_crypto=expired_crypto, checked_at=now)
        # Counts only; never which users
        logger.info(f"[Cron] Subscription check complete: {result.to_dict()}")
        return result
