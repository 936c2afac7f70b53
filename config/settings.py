"""
Configuration settings for the application
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGS_DIR = Path("./logs")

# Subscription tiers stored on user_subscriptions.subscription_tier
TIER_UNPAID = "unpaid"
TIER_FREE = "free"
TIER_TRIAL = "trial"
TIER_PAID = "paid"

# Paid sub-tiers offered at checkout ("retail" is the free product tier)
PLAN_RETAIL = "retail"
PLAN_TRADER = "trader"
PLAN_INNER_CIRCLE = "inner_circle"

PROVIDER_STRIPE = "stripe"
PROVIDER_NOWPAYMENTS = "nowpayments"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./edge_of_ict.db", alias="DATABASE_URL")
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")

    # External auth provider (session cookies are HS256 JWTs signed with this secret)
    auth_jwt_secret: Optional[str] = Field(default=None, alias="AUTH_JWT_SECRET")

    # Public base URL used for provider redirects and CORS
    app_url: str = Field(default="http://localhost:3000", alias="APP_URL")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_trader: Optional[str] = Field(default=None, alias="STRIPE_PRICE_TRADER")
    stripe_price_inner_circle: Optional[str] = Field(default=None, alias="STRIPE_PRICE_INNER_CIRCLE")

    # NOWPayments (crypto invoices)
    nowpayments_api_key: Optional[str] = Field(default=None, alias="NOWPAYMENTS_API_KEY")
    nowpayments_ipn_secret: Optional[str] = Field(default=None, alias="NOWPAYMENTS_IPN_SECRET")
    nowpayments_api_url: str = Field(default="https://api.nowpayments.io/v1", alias="NOWPAYMENTS_API_URL")
    crypto_price_amount: float = Field(default=14.50, alias="CRYPTO_PRICE_AMOUNT")

    # Outbound provider calls
    provider_timeout_seconds: float = Field(default=10.0, alias="PROVIDER_TIMEOUT_SECONDS")
    provider_max_attempts: int = Field(default=3, alias="PROVIDER_MAX_ATTEMPTS")

    # Scheduled jobs
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")
    backup_user_email: Optional[str] = Field(default=None, alias="BACKUP_USER_EMAIL")
    backup_dir: str = Field(default="./backups", alias="BACKUP_DIR")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")
    render: Optional[str] = Field(default=None, alias="RENDER")

    @property
    def is_production(self) -> bool:
        return bool(self.render) or bool(self.env and self.env.lower() == "production")


# Instantiate settings object
settings = Settings()
