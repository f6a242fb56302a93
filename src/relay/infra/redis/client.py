"""
Redis client wrapper.

Responsibilities:
- Create and manage a Redis connection
- Centralize Redis configuration
- Provide a reusable async Redis client

NOTE:
- This module does NOT know about streams, packets, or translation.
- Responses are NOT decoded: stream entries carry raw MQTT frames.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from src.relay.config.settings import settings
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisClient:
    """
    Thin wrapper around redis.asyncio client.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        db: Optional[int] = None,
    ) -> None:
        self.host = host or settings.redis_host
        self.port = port or settings.redis_port
        self.db = settings.redis_db if db is None else db
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> redis.Redis:
        """
        Initialize Redis connection if not already connected.
        """
        if self._client:
            return self._client

        logger.info(
            "Connecting to Redis | host=%s | port=%s | db=%s",
            self.host,
            self.port,
            self.db,
        )

        self._client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            decode_responses=False,
        )

        try:
            await self._client.ping()
            logger.info("Redis connection established successfully")
        except Exception as exc:
            logger.error("Failed to connect to Redis", exc_info=exc)
            self._client = None
            raise

        return self._client

    async def get_client(self) -> redis.Redis:
        """
        Get an active Redis client.
        """
        if not self._client:
            await self.connect()
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
