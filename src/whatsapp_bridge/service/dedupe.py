"""
Inbound Deduplication

Drops gateway webhook redeliveries of the same message. Keys live in Redis
for INBOUND_DEDUPE_TTL_SECONDS; without Redis every message is processed.
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "bridge:inbound:seen"


class InboundDeduplicator:
    """SET NX based seen-set keyed on (instance, gateway message id)."""

    def __init__(self, redis_client: aioredis.Redis | None, ttl_seconds: int = 86400):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key_for(instance_id: str, message_id: str) -> str:
        return f"{KEY_PREFIX}:{instance_id}:{message_id}"

    async def is_duplicate(self, instance_id: str, message_id: str | None) -> bool:
        """
        Mark a message as seen.

        Returns:
            True if the message was already seen within the TTL
        """
        if self.redis is None or not message_id:
            return False

        try:
            created = await self.redis.set(
                self.key_for(instance_id, message_id),
                "1",
                nx=True,
                ex=self.ttl_seconds,
            )
        except RedisError as e:
            logger.warning(
                f"Dedupe check failed, processing message anyway: {e}",
                extra={"instance": instance_id, "message_id": message_id},
            )
            return False

        return not created
