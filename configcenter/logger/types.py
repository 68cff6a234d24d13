"""Types and constants for structured logging."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Level(str, Enum):
    """Severity of a log record."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"  # recoverable
    FATAL = "fatal"  # process exits
    PANIC = "panic"


class Category(str, Enum):
    """Subsystem a log record belongs to, used for grouping in the log table."""

    DATABASE = "database"  # connection pool, transactions
    STORE = "store"  # configuration entry writes and reads
    METADATA = "metadata"  # display/validation descriptors
    HISTORY = "history"  # audit ledger
    MERGE = "merge"  # multi-source resolution
    HOT_RELOAD = "hot_reload"  # debounce, dispatch, health
    CACHE = "cache"
    MESSENGER = "messenger"  # Redis Streams


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LogEntry:
    """One log record as stored in the ``service_logs`` table."""

    timestamp: datetime
    service_name: str
    instance_id: str
    environment: str
    level: Level
    message: str
    ingestion_time: datetime = field(default_factory=_utcnow)
    category: Category | None = None
    function_name: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    context: dict[str, Any] | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "category": self.category.value if self.category else None,
            "message": self.message,
            "service_name": self.service_name,
            "environment": self.environment,
        }
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        if self.error_message:
            data["error"] = self.error_message
        if self.context:
            data["context"] = self.context
        return data


@dataclass
class Field:
    """Structured key/value attached to a log record."""

    key: str
    value: Any


def category(cat: Category) -> Field:
    """Override the logger's category for a single record."""
    return Field(key="_category", value=cat)


def param(key: str, value: Any) -> Field:
    return Field(key=key, value=value)


def duration_ms(value: float) -> Field:
    return Field(key="duration_ms", value=value)
