import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async get/set/delete against a Redis instance; failures are logged, never raised."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the connection and ping it. Idempotent; raises if Redis is unreachable."""
        if self._client is not None:
            return
        client = Redis.from_url(self._url, decode_responses=True)
        try:
            await client.ping()
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await client.aclose()
            raise
        self._client = client
        logger.info("Redis connection established: %s", self._url.split("@")[-1])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing, disconnected or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Set key to value, expiring after ttl_seconds when given. Returns True on success."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
