"""
Rate Limiter - Redis-based request rate limiting.

Sliding window limiter used to cap manual sync triggers per user.

Design:
- Sliding window algorithm (fair and accurate)
- Redis sorted sets for efficient tracking
- Fail-open behavior (if Redis is down, allow requests)
- Automatic cleanup of old entries

Usage:
    from syncwatch.middleware.rate_limiter import rate_limiter

    allowed, info = await rate_limiter.check_manual_sync_limit(user_id)
    if not allowed:
        raise RateLimitedError(retry_after=info["retry_after"])
"""

import time

from syncwatch.config import settings
from syncwatch.infrastructure.observability.logging import get_logger
from syncwatch.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


class RateLimiter:
    """
    Redis-based rate limiter using sliding window algorithm.

    Example:
        With a limit of 1 per 60s, a trigger accepted at 10:00:00 blocks
        further triggers until 10:01:00.

    Thread Safety:
        Uses an atomic Lua script to prevent race conditions under concurrency.
    """

    # Returns: {allowed (0 or 1), current_count, oldest_timestamp or 0}
    RATE_LIMIT_LUA_SCRIPT = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_seconds = tonumber(ARGV[2])
    local current_time = tonumber(ARGV[3])
    local unique_id = ARGV[4]

    -- Remove entries that fell out of the window
    local window_start = current_time - window_seconds
    redis.call('ZREMRANGEBYSCORE', key, 0, window_start)

    local current_count = redis.call('ZCARD', key)

    if current_count >= limit then
        local oldest_entries = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local oldest_timestamp = 0
        if #oldest_entries > 0 then
            oldest_timestamp = tonumber(oldest_entries[2])
        end
        return {0, current_count, oldest_timestamp}
    end

    redis.call('ZADD', key, current_time, unique_id)
    redis.call('EXPIRE', key, window_seconds * 2)

    return {1, current_count + 1, 0}
    """

    def __init__(
        self,
        default_limit: int = 1,
        window_seconds: int = 60,
        fail_open: bool = True,
        redis_client: FastRedisClient | None = None,
    ):
        """
        Initialize rate limiter.

        Args:
            default_limit: Default requests per window
            window_seconds: Time window in seconds
            fail_open: If True, allow requests when Redis fails
            redis_client: Pooled client (defaults to the process-wide one)
        """
        self.default_limit = default_limit
        self.window_seconds = window_seconds
        self.fail_open = fail_open
        self.redis = redis_client or fast_redis

    async def check_rate_limit(
        self,
        key: str,
        limit: int | None = None,
        window_seconds: int | None = None,
    ) -> tuple[bool, dict]:
        """
        Check if rate limit is exceeded for given key and record the hit if not.

        Args:
            key: Rate limit key (e.g., "manual-sync:123")
            limit: Request limit for this window (None = use default)
            window_seconds: Time window (None = use default)

        Returns:
            Tuple of (allowed, info) where info carries limit, remaining and
            retry_after (seconds, only when rejected).
        """
        limit = limit or self.default_limit
        window_seconds = window_seconds or self.window_seconds

        redis_key = f"ratelimit:{key}"
        current_time = int(time.time())

        if not settings.RATE_LIMIT_ENABLED:
            return True, self._create_info_dict(allowed=True, limit=limit, remaining=limit)

        try:
            if not self.redis.client:
                if self.fail_open:
                    logger.warning("Redis not initialized, failing open (allowing request)")
                    return True, self._create_info_dict(
                        allowed=True, limit=limit, remaining=limit, error="redis_not_initialized"
                    )
                return False, self._create_info_dict(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=window_seconds,
                    error="redis_not_initialized",
                )

            unique_id = f"{current_time}:{time.time_ns()}"

            result = await self.redis.client.eval(
                self.RATE_LIMIT_LUA_SCRIPT,
                1,
                redis_key,
                limit,
                window_seconds,
                current_time,
                unique_id,
            )

            allowed = bool(result[0])
            current_count = int(result[1])
            oldest_timestamp = int(result[2]) if result[2] else 0

            if not allowed:
                if oldest_timestamp > 0:
                    retry_after = max(1, (oldest_timestamp + window_seconds) - current_time)
                else:
                    retry_after = window_seconds

                return False, self._create_info_dict(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=retry_after,
                    window_seconds=window_seconds,
                )

            return True, self._create_info_dict(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - current_count),
                window_seconds=window_seconds,
            )

        except Exception as e:
            logger.error(
                "Rate limiter Redis error",
                error=str(e),
                error_type=type(e).__name__,
                key=key,
                limit=limit,
            )

            if self.fail_open:
                return True, self._create_info_dict(
                    allowed=True, limit=limit, remaining=limit, error="rate_limiter_error"
                )
            return False, self._create_info_dict(
                allowed=False,
                limit=limit,
                remaining=0,
                retry_after=window_seconds,
                error="rate_limiter_error",
            )

    async def check_manual_sync_limit(self, user_id: str) -> tuple[bool, dict]:
        """Per-user manual sync limit, shared across integration types."""
        rate_limits = settings.get_rate_limits()
        return await self.check_rate_limit(
            key=f"manual-sync:{user_id}",
            limit=rate_limits["manual_sync_limit"],
            window_seconds=rate_limits["manual_sync_window_seconds"],
        )

    def _create_info_dict(
        self,
        allowed: bool,
        limit: int,
        remaining: int,
        retry_after: int | None = None,
        window_seconds: int | None = None,
        error: str | None = None,
    ) -> dict:
        info = {
            "allowed": allowed,
            "limit": limit,
            "remaining": remaining,
            "retry_after": retry_after,
        }

        if window_seconds is not None:
            info["window_seconds"] = window_seconds

        if error:
            info["error"] = error

        return info


# Global singleton
rate_limiter = RateLimiter(
    default_limit=settings.MANUAL_SYNC_LIMIT_PER_WINDOW,
    window_seconds=settings.MANUAL_SYNC_WINDOW_SECONDS,
    fail_open=settings.RATE_LIMIT_FAIL_OPEN,
)
