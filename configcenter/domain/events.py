"""
Events moved through the bus.

Change events are a closed union of ``ConfigCreated``, ``ConfigUpdated`` and
``ConfigDeleted`` sharing one envelope. Reload lifecycle events describe what
the hot-reload coordinator did with them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Union

from configcenter.domain.config import Environment

TOPIC_CONFIG_CHANGED = "config.changed"
TOPIC_RELOAD_TRIGGERED = "reload.triggered"
TOPIC_RELOAD_COMPLETED = "reload.completed"
TOPIC_RELOAD_FAILED = "reload.failed"


def category_changed_topic(category: str) -> str:
    return f"config.{category}.changed"


def category_reloaded_topic(category: str) -> str:
    return f"reload.{category}.completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return _utcnow()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass(frozen=True, kw_only=True)
class ChangeEnvelope:
    """Fields every change event carries."""

    type: ClassVar[str] = ""

    category: str
    key: str
    environment: Environment
    actor: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    reason: str | None = None

    @property
    def reload_key(self) -> str:
        return f"{self.category}:{Environment(self.environment).value}"

    @property
    def event_type(self) -> str:
        """Name used for the ``event_type`` field of bus messages."""
        return f"config_{self.type}"

    def _variant_payload(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "type": self.type,
            "category": self.category,
            "key": self.key,
            "environment": Environment(self.environment).value,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }
        payload.update(self._variant_payload())
        return payload


@dataclass(frozen=True, kw_only=True)
class ConfigCreated(ChangeEnvelope):
    type: ClassVar[str] = "created"

    new_value: str | None = None

    def _variant_payload(self) -> dict[str, Any]:
        return {"new_value": self.new_value}


@dataclass(frozen=True, kw_only=True)
class ConfigUpdated(ChangeEnvelope):
    type: ClassVar[str] = "updated"

    old_value: str | None = None
    new_value: str | None = None

    def _variant_payload(self) -> dict[str, Any]:
        return {"old_value": self.old_value, "new_value": self.new_value}


@dataclass(frozen=True, kw_only=True)
class ConfigDeleted(ChangeEnvelope):
    type: ClassVar[str] = "deleted"

    old_value: str | None = None

    def _variant_payload(self) -> dict[str, Any]:
        return {"old_value": self.old_value}


ChangeEvent = Union[ConfigCreated, ConfigUpdated, ConfigDeleted]

_VARIANTS: dict[str, type[ChangeEnvelope]] = {
    cls.type: cls for cls in (ConfigCreated, ConfigUpdated, ConfigDeleted)
}


def change_event_from_payload(data: dict[str, Any]) -> ChangeEvent:
    """
    Rebuild a change event from its bus payload.

    Raises:
        ValueError: Unknown ``type`` or environment
        KeyError: Missing envelope field
    """
    kind = data.get("type")
    variant = _VARIANTS.get(kind or "")
    if variant is None:
        raise ValueError(f"Unknown change event type: {kind!r}")

    envelope: dict[str, Any] = {
        "category": data["category"],
        "key": data["key"],
        "environment": Environment(data["environment"]),
        "actor": data.get("actor"),
        "timestamp": _parse_timestamp(data.get("timestamp")),
        "reason": data.get("reason"),
    }
    if variant is ConfigCreated:
        return ConfigCreated(**envelope, new_value=data.get("new_value"))
    if variant is ConfigUpdated:
        return ConfigUpdated(
            **envelope, old_value=data.get("old_value"), new_value=data.get("new_value")
        )
    return ConfigDeleted(**envelope, old_value=data.get("old_value"))


@dataclass(frozen=True)
class ReloadTriggered:
    category: str
    environment: Environment
    handler_count: int
    requested_by: str | None = None
    triggered_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "environment": Environment(self.environment).value,
            "handler_count": self.handler_count,
            "requested_by": self.requested_by,
            "triggered_at": self.triggered_at.isoformat(),
        }


@dataclass(frozen=True)
class ReloadCompleted:
    category: str
    environment: Environment
    success_count: int
    error_count: int
    duration_ms: int
    errors: list[str] = field(default_factory=list)
    requested_by: str | None = None
    reloaded_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "environment": Environment(self.environment).value,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "duration_ms": self.duration_ms,
            "errors": list(self.errors),
            "requested_by": self.requested_by,
            "reloaded_at": self.reloaded_at.isoformat(),
        }


@dataclass(frozen=True)
class ReloadFailed:
    category: str
    environment: Environment
    error: str
    requested_by: str | None = None
    failed_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "environment": Environment(self.environment).value,
            "error": self.error,
            "requested_by": self.requested_by,
            "failed_at": self.failed_at.isoformat(),
        }
