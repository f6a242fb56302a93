"""
Redis Stream publisher.

Responsibilities:
- Append encoded MQTT PUBLISH frames to a Redis Stream (inbound, outbound or rejected)
- Log publish lifecycle clearly

NOTE:
- This module does NOT encode packets; callers pass ready-made frames.
"""

from __future__ import annotations

from typing import Dict, Optional, Union

from src.relay.config.settings import settings
from src.relay.infra.redis.client import RedisClient
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

FieldValue = Union[bytes, str, int]


class RedisStreamPublisher:
    def __init__(self, redis_client: RedisClient, stream_name: str, packet_field: Optional[str] = None) -> None:
        self.redis_client = redis_client
        self.stream_name = stream_name
        self.packet_field = packet_field or settings.redis_packet_field

    async def publish_packet(self, packet: bytes, extra: Optional[Dict[str, FieldValue]] = None) -> str:
        """
        Publish one encoded frame to the stream.

        Returns:
            stream_id (str): Redis-generated stream entry ID
        """
        client = await self.redis_client.get_client()

        fields: Dict[str, FieldValue] = {self.packet_field: packet}
        if extra:
            fields.update(extra)

        try:
            stream_id = await client.xadd(name=self.stream_name, fields=fields)
        except Exception as exc:
            logger.error("Failed to publish packet | stream=%s", self.stream_name, exc_info=exc)
            raise

        stream_id = stream_id.decode() if isinstance(stream_id, bytes) else str(stream_id)
        logger.debug(
            "Packet published | stream=%s | stream_id=%s | bytes=%s | fields=%s",
            self.stream_name,
            stream_id,
            len(packet),
            list(fields.keys()),
        )
        return stream_id
