"""
Edge of ICT backend - tiered access control and subscription lifecycle
for the trading journal.
"""

import logging
import traceback
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Import routers
from routers.backup_router import backup_router
from routers.billing_router import billing_router
from routers.checkout_router import checkout_router
from routers.contact_router import contact_router, CONTACT_LIMIT_PER_HOUR
from routers.cron_router import cron_router
from routers.pages_router import pages_router
from routers.webhooks_router import webhooks_router
from services.checkout_providers import price_map_for, select_card_provider
from services.nowpayments_client import NowPaymentsClient
from utils.access_middleware import AUTH_LIMIT_PER_MINUTE, AccessGateMiddleware
from utils.rate_limit import RateLimiter, bucket_store_from_settings
from utils.responses import success_response
from database import AsyncSessionLocal, init_db
from config.settings import settings as default_settings, Settings, LOGS_DIR

# Logging setup - write ALL events to ./logs/app.log
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""

    def __init__(self, app, production: bool = False):
        super().__init__(app)
        self.production = production

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Payment pages are hosted by the providers; nothing third-party is embedded here
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' 'unsafe-inline'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data: blob:; "
            "object-src 'none'; "
            "base-uri 'self'; "
            "form-action 'self' https://checkout.stripe.com;"
        )
        # HTTPS is only guaranteed behind the production proxy
        if self.production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response


def create_app(app_settings: Optional[Settings] = None, session_factory=None) -> FastAPI:
    """
    Build the application.

    Provider rails are chosen here, once: Stripe or the checkout simulator
    for cards, NOWPayments or nothing for crypto. A Stripe key without a
    complete price table fails here instead of at the first webhook.

    Args:
        app_settings: configuration; defaults to the environment
        session_factory: async session factory shared by the interceptor and
            the routes; defaults to the configured database
    """
    app_settings = app_settings or default_settings
    app = FastAPI(title="Edge of ICT")

    app.state.settings = app_settings
    app.state.session_factory = session_factory or AsyncSessionLocal
    app.state.card_checkout = select_card_provider(app_settings)
    app.state.price_map = price_map_for(app_settings)
    app.state.crypto_client = NowPaymentsClient.from_settings(app_settings)
    app.state.contact_limiter = RateLimiter(
        bucket_store_from_settings(app_settings),
        scope="contact",
        capacity=CONTACT_LIMIT_PER_HOUR,
        window_seconds=3600,
    )
    app.state.auth_limiter = RateLimiter(
        bucket_store_from_settings(app_settings),
        scope="auth",
        capacity=AUTH_LIMIT_PER_MINUTE,
        window_seconds=60,
    )

    # Innermost first: the access gate sees the request after the outer layers
    app.add_middleware(AccessGateMiddleware)
    app.add_middleware(UncaughtExceptionMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, production=app_settings.is_production)

    # CORS MUST be near the bottom
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def check_env_keys_on_startup():
        """Warn about unset provider keys (non-fatal; affected routes answer 503)"""
        key_checks = {
            "AUTH_JWT_SECRET": app_settings.auth_jwt_secret,
            "STRIPE_SECRET_KEY": app_settings.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": app_settings.stripe_webhook_secret,
            "NOWPAYMENTS_API_KEY": app_settings.nowpayments_api_key,
            "NOWPAYMENTS_IPN_SECRET": app_settings.nowpayments_ipn_secret,
            "CRON_SECRET": app_settings.cron_secret,
        }
        missing = [key for key, value in key_checks.items() if not value]
        if missing:
            logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
        else:
            logger.info("Startup check: All critical environment variables are set")

    if session_factory is None:
        @app.on_event("startup")
        async def initialize_database():
            """Create all tables."""
            try:
                await init_db()
                logger.info("Database initialized successfully")
            except Exception as e:
                logger.error(f"Database initialization failed: {e}")
                raise

    @app.get("/api/health")
    async def health():
        return success_response({"ok": True})

    app.include_router(checkout_router)
    app.include_router(webhooks_router)
    app.include_router(cron_router)
    app.include_router(backup_router)
    app.include_router(billing_router)
    app.include_router(contact_router)
    app.include_router(pages_router)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
