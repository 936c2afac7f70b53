"""
NOWPayments client - creates hosted crypto invoices.
"""
import asyncio
import logging
from typing import Optional, Union

import httpx
from pydantic import BaseModel, ValidationError

from config.settings import Settings
from utils.errors import ProviderResponseError, ProviderUnavailableError

logger = logging.getLogger(__name__)

ORDER_PREFIX = "edgetracker_"
ORDER_DESCRIPTION = "Edge of ICT Pro - Monthly"

# Backoff before attempt n+1 is BACKOFF_BASE_SECONDS * 2**(n-1)
BACKOFF_BASE_SECONDS = 0.5


class NowPaymentsInvoice(BaseModel):
    """The fields of the invoice response we rely on."""
    id: Union[int, str]
    invoice_url: str


def order_id_for(user_id: str) -> str:
    return f"{ORDER_PREFIX}{user_id}"


class NowPaymentsClient:
    """
    Thin async client for the NOWPayments invoice API.

    Transport errors and 5xx answers are retried with exponential backoff up
    to ``max_attempts``; 4xx answers and schema failures are not.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        app_url: str,
        price_amount: float,
        timeout: float = 10.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.app_url = app_url.rstrip("/")
        self.price_amount = price_amount
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["NowPaymentsClient"]:
        """None when the operator has not configured the crypto rail."""
        if not settings.nowpayments_api_key:
            logger.warning("NOWPAYMENTS_API_KEY is not set. Crypto checkout will be unavailable.")
            return None
        return cls(
            api_key=settings.nowpayments_api_key,
            base_url=settings.nowpayments_api_url,
            app_url=settings.app_url,
            price_amount=settings.crypto_price_amount,
            timeout=settings.provider_timeout_seconds,
            max_attempts=settings.provider_max_attempts,
        )

    async def _post_with_retry(self, client: httpx.AsyncClient, path: str, payload: dict) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.post(path, json=payload)
                if response.status_code < 500:
                    return response
                last_error = ProviderUnavailableError(f"NOWPayments answered {response.status_code}")
                logger.warning(f"NOWPayments {path} attempt {attempt}/{self.max_attempts} got {response.status_code}")
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"NOWPayments {path} attempt {attempt}/{self.max_attempts} failed: {e}")
            if attempt < self.max_attempts:
                await asyncio.sleep(BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
        raise ProviderUnavailableError("Payment provider is unreachable. Please try again.") from last_error

    async def create_invoice(self, user_id: str) -> NowPaymentsInvoice:
        """
        Create a hosted invoice for one month of access.

        Returns:
            NowPaymentsInvoice with the id and the redirect URL

        Raises:
            ProviderUnavailableError: network failure or repeated 5xx
            ProviderResponseError: 4xx or a response that fails validation
        """
        payload = {
            "price_amount": self.price_amount,
            "price_currency": "usd",
            "order_id": order_id_for(user_id),
            "order_description": ORDER_DESCRIPTION,
            "ipn_callback_url": f"{self.app_url}/api/webhooks/nowpayments",
            "success_url": f"{self.app_url}/dashboard?upgraded=true",
            "cancel_url": f"{self.app_url}/pricing",
        }
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"x-api-key": self.api_key},
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            response = await self._post_with_retry(client, "/invoice", payload)

        if response.status_code >= 400:
            logger.error(f"NOWPayments invoice rejected: status={response.status_code} body={response.text[:200]}")
            raise ProviderResponseError("Failed to create payment invoice")

        try:
            return NowPaymentsInvoice.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"NOWPayments invoice response failed validation: {e}")
            raise ProviderResponseError("Payment provider returned an invalid invoice") from e
