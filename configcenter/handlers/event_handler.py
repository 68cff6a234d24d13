"""Routes change events read from the bus to the hot-reload coordinator."""

from collections.abc import Awaitable, Callable
from typing import Any

from configcenter.domain.events import change_event_from_payload
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param
from configcenter.services.hot_reload import HotReloadCoordinator


class EventHandler:
    """
    Handler for events consumed from Redis Streams.

    Routes events by ``event_type``; unknown types are logged and ACKed.
    """

    def __init__(self, coordinator: HotReloadCoordinator) -> None:
        self.coordinator = coordinator
        self.logger = get_logger().with_category(Category.MESSENGER)

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "config_created": self._handle_config_changed,
            "config_updated": self._handle_config_changed,
            "config_deleted": self._handle_config_changed,
        }

    async def handle(self, event: dict[str, Any]) -> None:
        """
        Handle one parsed bus message.

        Args:
            event: Dict with event_id, event_type and decoded data
        """
        event_type = event.get("event_type")
        event_id = event.get("event_id")

        handler = self._handlers.get(event_type or "")
        if handler is None:
            self.logger.warn(
                f"Unknown event type: {event_type}",
                param("event_id", event_id),
                param("event_type", event_type),
            )
            return

        try:
            await handler(event)
        except Exception as e:
            self.logger.error(
                f"Failed to process event: {event_type}",
                e,
                param("event_id", event_id),
                param("event_type", event_type),
            )
            raise

    async def _handle_config_changed(self, event: dict[str, Any]) -> None:
        data = event.get("data") or {}
        if not data:
            self.logger.warn(
                "Change event has empty data",
                param("event_id", event.get("event_id")),
            )
            return

        change = change_event_from_payload(data)
        self.logger.debug(
            "Change event received",
            param("event_id", event.get("event_id")),
            param("category", change.category),
            param("key", change.key),
            param("environment", change.environment.value),
        )
        self.coordinator.handle_change_event(change)
