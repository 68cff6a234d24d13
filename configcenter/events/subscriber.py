"""Event subscriber for Redis Streams."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from redis.exceptions import RedisError, ResponseError

from configcenter.events.client import RedisClient
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param


class EventSubscriber:
    """
    Reads change events from Redis Streams through a consumer group.

    - creates the consumer group (and stream) on first use
    - reads only new messages (``>``)
    - ACKs a message only after the handler returned
    - a failed message stays in the pending list for redelivery
    """

    def __init__(
        self,
        redis_client: RedisClient,
        consumer_group: str,
        streams: list[str],
        batch_size: int = 10,
        block_ms: int = 5000,
    ) -> None:
        """
        Initialize EventSubscriber.

        Args:
            redis_client: Redis client instance
            consumer_group: Consumer group name (e.g., "configcenter-development")
            streams: Stream names to subscribe (e.g., ["config.changed"])
            batch_size: Messages fetched per XREADGROUP call
            block_ms: XREADGROUP block time; bounds shutdown latency
        """
        self.redis_client = redis_client
        self.consumer_group = consumer_group
        self.streams = streams
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.consumer_name = f"{consumer_group}-consumer-{id(self)}"
        self._stopped = False
        self.logger = get_logger().with_category(Category.MESSENGER)

    async def ensure_groups(self) -> None:
        redis = self.redis_client.get_redis()
        for stream in self.streams:
            try:
                await redis.xgroup_create(
                    name=stream,
                    groupname=self.consumer_group,
                    id="$",  # only events published after the group exists
                    mkstream=True,
                )
                self.logger.info(
                    "Created consumer group",
                    param("group", self.consumer_group),
                    param("stream", stream),
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    self.logger.warn(
                        "Failed to create consumer group",
                        param("stream", stream),
                        param("error", str(e)),
                    )

    async def consume(self, handler: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        """
        Consume events until ``stop()`` is called or the task is cancelled.

        Args:
            handler: Async function called with each parsed event
        """
        await self.ensure_groups()
        redis = self.redis_client.get_redis()

        self.logger.info(
            "Starting event consumer",
            param("group", self.consumer_group),
            param("streams", self.streams),
        )

        while not self._stopped:
            try:
                messages = await redis.xreadgroup(
                    groupname=self.consumer_group,
                    consumername=self.consumer_name,
                    streams={stream: ">" for stream in self.streams},
                    count=self.batch_size,
                    block=self.block_ms,
                )
                for stream, stream_messages in messages or []:
                    for message_id, message_data in stream_messages:
                        await self._handle_message(stream, message_id, message_data, handler)

            except asyncio.CancelledError:
                self.logger.info("Consumer cancelled, stopping...")
                break
            except RedisError as e:
                self.logger.error("Error in consumer loop", e)
                await asyncio.sleep(5)

        self.logger.info("Event consumer stopped")

    async def _handle_message(
        self,
        stream: str,
        message_id: str,
        message_data: dict[str, Any],
        handler: Callable[[dict[str, Any]], Awaitable[None]],
    ) -> None:
        event = self.parse_event(message_data)
        self.logger.debug(
            "Received event",
            param("stream", stream),
            param("event_id", event.get("event_id")),
            param("event_type", event.get("event_type")),
        )

        try:
            await handler(event)
        except Exception as e:
            # Not ACKed: the message stays pending for redelivery
            self.logger.error(
                "Failed to handle message",
                e,
                param("stream", stream),
                param("message_id", message_id),
                param("event_type", event.get("event_type")),
            )
            return

        redis = self.redis_client.get_redis()
        await redis.xack(stream, self.consumer_group, message_id)
        self.logger.debug(
            "Event processed and ACKed",
            param("event_id", event.get("event_id")),
            param("message_id", message_id),
        )

    @staticmethod
    def parse_event(message_data: dict[str, Any]) -> dict[str, Any]:
        """Flat stream fields plus ``data`` decoded from its JSON string."""
        event: dict[str, Any] = {
            "event_id": message_data.get("event_id"),
            "event_type": message_data.get("event_type"),
            "source": message_data.get("source"),
            "timestamp": message_data.get("timestamp"),
        }
        try:
            event["data"] = json.loads(message_data.get("data") or "{}")
        except json.JSONDecodeError:
            event["data"] = {}
        return event

    async def stop(self) -> None:
        self.logger.info("Stopping event consumer...")
        self._stopped = True
