"""
Tests for the token-bucket rate limiter and the contact form it guards
"""
import pytest
import redis.asyncio as redis
from starlette.requests import Request

from utils.rate_limit import BucketStore, InMemoryBucketStore, RateLimiter, get_client_ip


class UnavailableStore(BucketStore):
    async def load(self, key):
        raise redis.ConnectionError("redis is down")

    async def save(self, key, tokens, last_refill, ttl_seconds):
        raise redis.ConnectionError("redis is down")


def make_request(headers=None, client=("10.0.0.9", 5555)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/contact",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


@pytest.mark.asyncio
async def test_bucket_allows_capacity_then_blocks():
    limiter = RateLimiter(InMemoryBucketStore(), scope="contact", capacity=3, window_seconds=3600)
    results = [await limiter.hit("1.2.3.4", now=1000.0) for _ in range(4)]
    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_bucket_refills_over_the_window():
    limiter = RateLimiter(InMemoryBucketStore(), scope="contact", capacity=3, window_seconds=3600)
    for _ in range(3):
        await limiter.hit("1.2.3.4", now=0.0)
    assert await limiter.hit("1.2.3.4", now=600.0) is False
    # More than one token back after a third of the window
    assert await limiter.hit("1.2.3.4", now=1500.0) is True


@pytest.mark.asyncio
async def test_buckets_are_per_ip():
    limiter = RateLimiter(InMemoryBucketStore(), scope="contact", capacity=1, window_seconds=60)
    assert await limiter.hit("1.1.1.1", now=0.0) is True
    assert await limiter.hit("2.2.2.2", now=0.0) is True
    assert await limiter.hit("1.1.1.1", now=0.0) is False


@pytest.mark.asyncio
async def test_unreachable_store_allows_traffic():
    limiter = RateLimiter(UnavailableStore(), scope="contact", capacity=1, window_seconds=60)
    assert await limiter.hit("1.1.1.1") is True
    assert await limiter.hit("1.1.1.1") is True


def test_client_ip_prefers_first_forwarded_hop():
    assert get_client_ip(make_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})) == "203.0.113.7"
    assert get_client_ip(make_request()) == "10.0.0.9"
    assert get_client_ip(make_request(client=None)) == "unknown"


@pytest.mark.asyncio
async def test_contact_form_validation_and_limit(build_app, client_for):
    """Three requests per hour per IP, rejected ones included; the fourth is refused with 429."""
    app = build_app()
    message = {"name": "Ada", "email": "ada@example.com", "message": "Is there a team plan?"}
    headers = {"X-Forwarded-For": "198.51.100.4"}

    async with client_for(app) as client:
        invalid = await client.post("/api/contact", json={"name": "Ada"}, headers=headers)
        accepted = [await client.post("/api/contact", json=message, headers=headers) for _ in range(2)]
        limited = await client.post("/api/contact", json=message, headers=headers)
        other_ip = await client.post("/api/contact", json=message, headers={"X-Forwarded-For": "198.51.100.5"})

    assert invalid.status_code == 400
    assert [r.status_code for r in accepted] == [200, 200]
    assert limited.status_code == 429
    assert other_ip.status_code == 200
