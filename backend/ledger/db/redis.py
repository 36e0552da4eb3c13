"""Redis client for sessions, rate limiting, locks and entitlement caching"""
import json
import logging
from typing import Optional, Dict

import redis

from ledger.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# Rate limiting configuration
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_REQUESTS = 600  # requests per window
RATE_LIMIT_STRICT_WINDOW = 60  # seconds
RATE_LIMIT_STRICT_REQUESTS = 60  # state-changing requests per window


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session (sessions are written by the auth service)"""
    key = f"session:{session_id}"
    user_id = get_redis_client().get(key)
    return int(user_id) if user_id else None


def get_csrf_token(session_id: str) -> Optional[str]:
    """Get CSRF token from Redis"""
    key = f"csrf:{session_id}"
    return get_redis_client().get(key)


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment rate limit counter and return current count.
    Uses Lua script to atomically increment and set TTL only for new keys (fixed window rate limiting)."""
    key = f"ratelimit:{identifier}"

    lua_script = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('EXPIRE', KEYS[1], ARGV[1])
    end
    return count
    """

    count = get_redis_client().eval(lua_script, 1, key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit using Redis. Returns True if allowed, False if rate limited."""
    window = RATE_LIMIT_STRICT_WINDOW if strict else RATE_LIMIT_WINDOW
    max_requests = RATE_LIMIT_STRICT_REQUESTS if strict else RATE_LIMIT_REQUESTS

    current_count = increment_rate_limit(identifier, window)
    return current_count <= max_requests


def acquire_lock(lock_key: str, timeout: int = 30) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)

    Returns:
        True if lock was acquired, False if lock already exists
    """
    result = get_redis_client().set(lock_key, "1", nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str) -> None:
    """Release a distributed lock by deleting the key."""
    get_redis_client().delete(lock_key)


def payout_lock_key(author_id: int) -> str:
    return f"lock:payout:{author_id}"


def get_cached_entitlements(user_id: int) -> Optional[Dict]:
    """Get cached entitlement projection for a user"""
    key = f"cache:entitlements:{user_id}"
    cached = get_redis_client().get(key)
    if cached:
        return json.loads(cached)
    return None


def set_cached_entitlements(user_id: int, entitlements: Dict) -> None:
    """Cache the entitlement projection for a user"""
    key = f"cache:entitlements:{user_id}"
    get_redis_client().setex(key, settings.ENTITLEMENT_CACHE_TTL, json.dumps(entitlements))


def invalidate_entitlements_cache(user_id: int) -> None:
    """Drop cached entitlements for a user.

    Redis failures are logged, not raised: the cache is always rebuildable from
    subscription rows and a ledger write must not fail because of it.
    """
    try:
        get_redis_client().delete(f"cache:entitlements:{user_id}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate entitlement cache for user {user_id}: {e}")
