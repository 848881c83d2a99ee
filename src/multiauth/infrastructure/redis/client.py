"""Redis Client for multiauth

Provides async Redis connection management for the Redis-backed session
store and sync channel (SESSION_BACKEND=redis).
"""

import logging
from typing import Optional

import redis.asyncio as redis

from multiauth.config.settings import Settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper"""

    def __init__(self, settings: Settings):
        """Initialize Redis client

        Args:
            settings: Provides redis_url and connection components
        """
        self.settings = settings
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection.

        Environment Variables:
            REDIS_HOST, REDIS_PORT, REDIS_DB, REDIS_PASSWORD
        """
        if not self._client:
            self._client = redis.from_url(self.settings.redis_url, decode_responses=True)
            await self._client.ping()
            logger.info(
                f"Connected to Redis: "
                f"{self.settings.redis_host}:{self.settings.redis_port}/{self.settings.redis_db}"
            )

    async def disconnect(self) -> None:
        """Close Redis connection"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    def get_client(self) -> redis.Redis:
        """Get the underlying Redis client

        Returns:
            Redis client instance

        Raises:
            RuntimeError: If client not connected
        """
        if not self._client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> bool:
        """Check Redis connection health

        Returns:
            True if Redis is responsive, False otherwise
        """
        try:
            if not self._client:
                return False
            await self._client.ping()
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False
