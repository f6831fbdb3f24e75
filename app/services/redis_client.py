# app/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled asyncio Redis client for the dead-letter list and readiness checks"""

    def __init__(self, url: str | None = None, max_connections: int = 10):
        self.url = url or settings.REDIS_URL
        self.max_connections = max_connections
        self.pool = None
        self.client = None
        self._initialized = False

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return
        if not self.url:
            raise RuntimeError("REDIS_URL is not configured")

        try:
            logger.info("Attempting Redis connection", url_preview=self.url.split("@")[-1][:30])

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def rpush(self, key: str, value: str) -> int:
        """Append to a list. Errors propagate so callers can decide how to degrade."""
        await self._ensure_initialized()
        return int(await self.client.rpush(key, value))

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        await self._ensure_initialized()
        return list(await self.client.lrange(key, start, end))

    async def llen(self, key: str) -> int:
        await self._ensure_initialized()
        return int(await self.client.llen(key))

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        await self._ensure_initialized()
        return bool(await self.client.ltrim(key, start, end))
