"""Redis Streams publisher for change and reload events."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from configcenter.events.client import RedisClient
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

STREAM_MAXLEN = 10000


class EventBus(Protocol):
    """Topic-addressed publish capability."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> str | None: ...


class RedisEventBus:
    """
    Publishes events to one Redis stream per topic.

    Messages carry the same flat fields the subscriber reads:
    ``event_id``, ``event_type``, ``timestamp`` and ``data`` (JSON string).
    """

    def __init__(
        self,
        redis_client: RedisClient,
        source: str = "configcenter",
        maxlen: int = STREAM_MAXLEN,
    ) -> None:
        self.redis_client = redis_client
        self.source = source
        self.maxlen = maxlen
        self.logger = get_logger().with_category(Category.MESSENGER)

    async def publish(self, topic: str, payload: dict[str, Any]) -> str | None:
        """
        Append ``payload`` to the stream named ``topic``.

        Args:
            topic: Stream name, e.g. ``config.changed``
            payload: JSON-serializable event body; its ``event_type`` key,
                when present, becomes the message type, otherwise the topic

        Returns:
            Redis stream message id
        """
        event_type = payload.get("event_type") or topic
        message = {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "source": self.source,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": json.dumps(payload, default=str),
        }
        redis = self.redis_client.get_redis()
        message_id = await redis.xadd(topic, message, maxlen=self.maxlen, approximate=True)

        self.logger.debug(
            "Event published",
            param("topic", topic),
            param("event_id", message["event_id"]),
            param("event_type", event_type),
            param("message_id", message_id),
        )
        return message_id  # type: ignore[no-any-return]
