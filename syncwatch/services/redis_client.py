# syncwatch/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from syncwatch.config import settings
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DELETE_IF_EQUALS_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class FastRedisClient:
    """Pooled redis.asyncio client shared by the rate limiter and the event drain."""

    def __init__(self, url: str | None = None, max_connections: int = 20):
        self.url = url or settings.REDIS_URL
        self.max_connections = max_connections
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", host=settings.redis_host())

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully", max_connections=self.max_connections
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            self.client = None
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def push_many(self, key: str, values: list[str]) -> int | None:
        """RPUSH a batch of values onto a list; returns the new list length."""
        if not values:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.rpush(key, *values))
        except Exception as e:
            logger.error("Redis RPUSH failed", key=key[:30], count=len(values), error=str(e))
            return None

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool | None:
        """SET NX PX; True when the key was set, None when Redis is unavailable."""
        try:
            await self._ensure_initialized()
            return bool(await self.client.set(key, value, nx=True, px=ttl_ms))
        except Exception as e:
            logger.error("Redis SET NX failed", key=key[:60], error=str(e))
            return None

    async def delete_if_equals(self, key: str, value: str) -> bool | None:
        """Delete the key only while it still holds `value`."""
        try:
            await self._ensure_initialized()
            return bool(await self.client.eval(DELETE_IF_EQUALS_LUA, 1, key, value))
        except Exception as e:
            logger.error("Redis compare-and-delete failed", key=key[:60], error=str(e))
            return None


# Global instance
fast_redis = FastRedisClient()
