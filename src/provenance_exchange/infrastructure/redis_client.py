"""Redis client for idempotency keys.

The accept-bid and payment endpoints accept an Idempotency-Key header; the
first request with a key claims it, replays within the TTL are rejected.

Usage:
    from provenance_exchange.infrastructure.redis_client import claim_idempotency

    if not await claim_idempotency(key):
        raise DuplicateOperationError(key)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from provenance_exchange.config import get_settings
from provenance_exchange.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def claim_idempotency(key: str) -> bool:
    """Atomically claim an idempotency key.

    Returns True if this call claimed the key, False if it was already used.
    """
    settings = get_settings()
    redis = get_redis()
    claimed = await redis.set(
        f"idempotency:{key}",
        "1",
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(claimed)


async def release_idempotency(key: str) -> None:
    """Forget a claimed key so a failed operation can be retried."""
    redis = get_redis()
    await redis.delete(f"idempotency:{key}")
