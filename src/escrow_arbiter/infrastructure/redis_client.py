"""Redis client for request idempotency keys.

Usage:
    from escrow_arbiter.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from escrow_arbiter.config import get_settings
from escrow_arbiter.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

_IN_FLIGHT = "in-flight"


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


def _idempotency_key(scope: str, key: str) -> str:
    return f"idempotency:{scope}:{key}"


async def reserve_idempotency_key(scope: str, key: str) -> bool:
    """Atomically claim an idempotency key.

    Returns True if the key was free (the caller should proceed), False if
    another request already used or is using it.
    """
    settings = get_settings()
    redis = get_redis()
    reserved = await redis.set(
        _idempotency_key(scope, key),
        _IN_FLIGHT,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(reserved)


async def complete_idempotency_key(scope: str, key: str, result_ref: str) -> None:
    """Replace the in-flight marker with a reference to what the request created."""
    settings = get_settings()
    redis = get_redis()
    await redis.set(
        _idempotency_key(scope, key),
        result_ref,
        ex=settings.redis_idempotency_ttl_seconds,
    )


async def release_idempotency_key(scope: str, key: str) -> None:
    """Free a key after a failed request so the client can retry with it."""
    redis = get_redis()
    await redis.delete(_idempotency_key(scope, key))
