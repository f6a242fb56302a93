"""
Redis infrastructure package.

Contains:
- Redis connection wrapper
- Stream publisher (inbound/outbound/rejected frames)
- Relay worker runtime (consume -> translate -> republish -> ack)
"""

from src.relay.infra.redis.client import RedisClient
from src.relay.infra.redis.stream_publisher import RedisStreamPublisher

__all__ = [
    "RedisClient",
    "RedisStreamPublisher",
]
