"""
Redis client for the Redis-backed document store.

This module provides a lazily connected Redis client with graceful
connection error handling.
"""

import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Async Redis client with connection management.

    The connection is created on first use and reset on failure so the next
    call retries.
    """

    def __init__(self, redis_url: str, socket_timeout: float = 5.0) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._client: Optional[redis.Redis] = None
        self._connection_error: Optional[str] = None

    async def get_client(self) -> Optional[redis.Redis]:
        """
        Get or create a Redis client instance.

        Returns:
            Redis client if available, None if connection failed.
        """
        if self._client is None:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=self.socket_timeout,
                    socket_timeout=self.socket_timeout,
                    retry_on_timeout=True,
                )
                await self._client.ping()
                self._connection_error = None
                logger.info("Redis connection established successfully")
            except redis.ConnectionError as e:
                self._connection_error = f"Redis connection failed: {str(e)}"
                logger.warning(self._connection_error)
                self._client = None
            except redis.TimeoutError as e:
                self._connection_error = f"Redis connection timeout: {str(e)}"
                logger.warning(self._connection_error)
                self._client = None

        return self._client

    @property
    def connection_error(self) -> Optional[str]:
        return self._connection_error

    async def close(self) -> None:
        """Close the Redis connection and cleanup resources."""
        if self._client:
            try:
                await self._client.aclose()
                logger.info("Redis connection closed")
            except redis.RedisError as e:
                logger.warning(f"Error closing Redis connection: {str(e)}")
            finally:
                self._client = None
