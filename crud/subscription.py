"""
SubscriptionRepository for database operations on SubscriptionRecord
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import TIER_UNPAID, TIER_TRIAL, TIER_PAID, PROVIDER_NOWPAYMENTS
from database_models import SubscriptionRecord, utc_now


class SubscriptionRepository:
    """
    Repository class for the user_subscriptions table.

    Writers always set absolute target state (never increments), which is
    what makes concurrent checkout, webhook and sweep writes safe without a
    version column.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord).where(SubscriptionRecord.stripe_customer_id == customer_id)
        )
        return result.scalars().first()

    async def get_by_stripe_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord).where(SubscriptionRecord.stripe_subscription_id == subscription_id)
        )
        return result.scalars().first()

    async def upsert(self, user_id: str, values: Dict[str, Any]) -> SubscriptionRecord:
        """
        Create the record on first touch or overwrite the given fields.

        Args:
            user_id: external identity id
            values: column attribute -> value; omitted fields are left alone

        Returns:
            The persisted SubscriptionRecord
        """
        record = await self.get_by_user_id(user_id)
        if record is None:
            record = SubscriptionRecord(user_id=user_id, tier=values.get("tier", TIER_UNPAID))
            self.db.add(record)
        for field, value in values.items():
            setattr(record, field, value)
        record.updated_at = utc_now()
        await self.db.flush()
        return record

    async def bulk_transition(self, where: list, values: Dict[str, Any]) -> int:
        """
        Conditional bulk update.

        ``where`` must repeat the pre-transition state, so a row already moved
        by another writer is not matched again.

        Returns:
            Number of rows changed
        """
        assignments = {getattr(SubscriptionRecord, field): value for field, value in values.items()}
        assignments[SubscriptionRecord.updated_at] = utc_now()
        stmt = (
            update(SubscriptionRecord)
            .where(*where)
            .values(assignments)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.flush()
        return result.rowcount or 0

    async def expire_trials(self, now: datetime, target_tier: str) -> int:
        return await self.bulk_transition(
            [
                SubscriptionRecord.tier == TIER_TRIAL,
                SubscriptionRecord.trial_ends_at.is_not(None),
                SubscriptionRecord.trial_ends_at <= now,
            ],
            {"tier": target_tier},
        )

    async def expire_crypto_periods(self, now: datetime, target_tier: str, payment_status: str) -> int:
        return await self.bulk_transition(
            [
                SubscriptionRecord.tier == TIER_PAID,
                SubscriptionRecord.payment_provider == PROVIDER_NOWPAYMENTS,
                SubscriptionRecord.current_period_end.is_not(None),
                SubscriptionRecord.current_period_end <= now,
            ],
            {"tier": target_tier, "payment_status": payment_status},
        )
