"""Redis store for distributed locks.

Handles:
- Run-level mutual exclusion for catalog syncs (one active run per catalog)

TTL policies:
- Sync run lock: bounded by Settings.sync_lock_ttl_s so a crashed host
  cannot hold the catalog forever
"""

import logging

import redis.asyncio as redis

from catalog_sync.settings import get_settings

# Key prefixes
PREFIX_LOCK = "lock:"
PREFIX_SYNC_LOCK = "catalog_sync:"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("catalog_sync")


async def init_redis() -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    # Validate connectivity early (especially for `rediss://` in production).
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


# ============================================================
# Distributed locks
# ============================================================


async def acquire_lock(key: str, ttl: int) -> bool:
    """Acquire a distributed lock.

    Args:
        key: Lock key (e.g., "catalog_sync:default").
        ttl: Lock timeout in seconds.

    Returns:
        True if lock acquired, False if already locked.
    """
    lock_key = f"{PREFIX_LOCK}{key}"
    # SET NX (only if not exists) with TTL
    result = await _get_redis().set(lock_key, "1", nx=True, ex=ttl)
    return result is not None


async def release_lock(key: str) -> None:
    """Release a distributed lock.

    Args:
        key: Lock key.
    """
    await _get_redis().delete(f"{PREFIX_LOCK}{key}")


def sync_lock_key(catalog: str = "default") -> str:
    """Lock key guarding sync runs against one catalog."""
    return f"{PREFIX_SYNC_LOCK}{catalog}"
