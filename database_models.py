from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, Text, ForeignKey
from datetime import datetime, timezone
from database import Base

from config.settings import TIER_UNPAID


def utc_now() -> datetime:
    """Naive UTC timestamp; every datetime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionRecord(Base):
    """
    One row per user. Created lazily on the first checkout interaction,
    mutated by checkout, provider webhooks and the consistency sweep.
    Rows are never deleted by the application.
    """
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    tier = Column("subscription_tier", String, nullable=False, default=TIER_UNPAID, index=True)
    plan = Column(String, nullable=True)

    trial_started_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)

    payment_provider = Column(String, nullable=True)
    payment_id = Column(String, nullable=True)
    payment_status = Column(String, nullable=True)

    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def to_dict(self) -> dict:
        def iso(value):
            return value.isoformat() + "Z" if value else None

        return {
            "user_id": self.user_id,
            "tier": self.tier,
            "plan": self.plan,
            "trial_started_at": iso(self.trial_started_at),
            "trial_ends_at": iso(self.trial_ends_at),
            "payment_provider": self.payment_provider,
            "payment_id": self.payment_id,
            "payment_status": self.payment_status,
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
        }


class AuthUser(Base):
    """Read-only mirror of the external auth provider's user directory."""
    __tablename__ = "auth_users"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class Edge(Base):
    """A trading setup tracked by a user."""
    __tablename__ = "edges"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    symbol = Column(String, nullable=True)
    parent_edge_id = Column(String, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    public_slug = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class TradeLog(Base):
    """A single day's outcome recorded against an edge."""
    __tablename__ = "logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    edge_id = Column(String, ForeignKey("edges.id"), nullable=False, index=True)
    log_type = Column(String, nullable=False, default="FRONTTEST")
    result = Column(String, nullable=False)
    outcome = Column(String, nullable=True)
    direction = Column(String, nullable=True)
    pnl = Column(Float, nullable=True)
    date = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class MacroLog(Base):
    __tablename__ = "macro_logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    macro_time = Column(String, nullable=False)
    date = Column(String, nullable=False)
    direction = Column(String, nullable=True)
    points_moved = Column(Float, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class ContactMessage(Base):
    __tablename__ = "contact_messages"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
