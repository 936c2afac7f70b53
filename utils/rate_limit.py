"""
IP-keyed token-bucket rate limiting.

The bucket store is injected. InMemoryBucketStore is per process and resets
on restart, so with several instances each one enforces its own limit.
RedisBucketStore shares buckets across instances.
"""
import json
import logging
from time import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from fastapi import HTTPException, Request

from config.settings import Settings

logger = logging.getLogger(__name__)


class BucketStore:
    async def load(self, key: str) -> Optional[Tuple[float, float]]:
        raise NotImplementedError

    async def save(self, key: str, tokens: float, last_refill: float, ttl_seconds: int) -> None:
        raise NotImplementedError


class InMemoryBucketStore(BucketStore):
    def __init__(self):
        # key -> (tokens, last_refill_ts)
        self._buckets: Dict[str, Tuple[float, float]] = {}

    async def load(self, key):
        return self._buckets.get(key)

    async def save(self, key, tokens, last_refill, ttl_seconds):
        self._buckets[key] = (tokens, last_refill)


class RedisBucketStore(BucketStore):
    def __init__(self, client: "redis.Redis"):
        self.client = client

    async def load(self, key):
        bucket_data = await self.client.get(key)
        if not bucket_data:
            return None
        data = json.loads(bucket_data)
        return float(data.get("tokens", 0)), float(data.get("last_refill", time()))

    async def save(self, key, tokens, last_refill, ttl_seconds):
        await self.client.setex(key, ttl_seconds, json.dumps({"tokens": tokens, "last_refill": last_refill}))


def bucket_store_from_settings(settings: Settings) -> BucketStore:
    if settings.redis_url:
        logger.info("Using Redis for rate limiting")
        return RedisBucketStore(redis.from_url(settings.redis_url, decode_responses=True))
    logger.info("REDIS_URL not set. Using in-memory rate limiting.")
    return InMemoryBucketStore()


def get_client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        # Take first IP in the list
        return xff.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


class RateLimiter:
    """
    Token bucket: ``capacity`` requests per ``window_seconds`` per key,
    refilled continuously.
    """

    def __init__(self, store: BucketStore, scope: str, capacity: int, window_seconds: float):
        self.store = store
        self.scope = scope
        self.capacity = capacity
        self.window_seconds = window_seconds

    def _key(self, ip: str) -> str:
        return f"rate_limit:{self.scope}:{ip}"

    async def take(self, ip: str, now: Optional[float] = None) -> Tuple[bool, int]:
        """
        Consume one token for this IP.

        Returns:
            (allowed, whole tokens left after this request)
        """
        now = time() if now is None else now
        key = self._key(ip)

        try:
            bucket = await self.store.load(key)
        except redis.RedisError as e:
            # Best effort: an unreachable limiter store never blocks traffic
            logger.warning(f"Rate limit store unavailable: {e}. Allowing request.")
            return True, self.capacity - 1
        tokens, last_refill = bucket if bucket else (float(self.capacity), now)

        # Refill based on elapsed time
        elapsed = max(0.0, now - last_refill)
        refill = (elapsed / self.window_seconds) * self.capacity
        tokens = min(float(self.capacity), tokens + refill)

        if tokens < 1.0:
            return False, 0

        try:
            await self.store.save(key, tokens - 1.0, now, int(self.window_seconds) + 10)
        except redis.RedisError as e:
            logger.warning(f"Rate limit store unavailable: {e}. Allowing request.")
        return True, int(tokens - 1.0)

    async def hit(self, ip: str, now: Optional[float] = None) -> bool:
        """Consume one token for this IP. Returns False when rate limited."""
        allowed, _ = await self.take(ip, now)
        return allowed

    async def __call__(self, request: Request) -> None:
        """FastAPI dependency form."""
        ip = get_client_ip(request)
        if not await self.hit(ip):
            logger.warning(f"Rate limit exceeded for scope={self.scope}")
            raise HTTPException(status_code=429, detail="Too many requests. Please wait a moment.")
