"""Configuration domain models."""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

DEFAULT_GROUP = "general"
FEATURE_TOGGLE_CATEGORY = "feature_toggles"


class Environment(str, Enum):
    """Deployment context that partitions configuration values."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class ValueType(str, Enum):
    """How the raw stored text of an entry is interpreted."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    PASSWORD = "password"
    JSON = "json"


class InputType(str, Enum):
    """Form control used to edit a key."""

    TEXT = "text"
    PASSWORD = "password"
    NUMBER = "number"
    SELECT = "select"
    TEXTAREA = "textarea"
    CHECKBOX = "checkbox"
    RADIO = "radio"


def parse_value(value: str | None, value_type: ValueType | str) -> Any:
    """
    Coerce the raw stored text of an entry to its typed value.

    Args:
        value: Raw text as stored, or None
        value_type: Declared type of the entry

    Returns:
        int/float for numbers, bool for booleans, parsed JSON for json,
        the raw text for everything else. Unparseable numbers and JSON
        fall back to the raw text.
    """
    if value is None:
        return None

    kind = ValueType(value_type)
    if kind is ValueType.NUMBER:
        try:
            number = float(value)
        except ValueError:
            return value
        if math.isfinite(number) and number.is_integer() and "." not in value and "e" not in value.lower():
            return int(number)
        return number
    if kind is ValueType.BOOLEAN:
        return value in ("true", "1")
    if kind is ValueType.JSON:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value
    return value


def serialize_value(value: Any) -> str | None:
    """Inverse of ``parse_value`` for values coming from typed callers."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


@dataclass
class ValidationRules:
    """Validation descriptor stored as JSON on a metadata row."""

    pattern: str | None = None
    min_length: int | None = None
    max_length: int | None = None
    min: float | None = None
    max: float | None = None
    options: list[str] | None = None
    required: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str | None) -> "ValidationRules | None":
        if data is None:
            return None
        if isinstance(data, str):
            data = json.loads(data)
        return cls(
            pattern=data.get("pattern"),
            min_length=data.get("minLength", data.get("min_length")),
            max_length=data.get("maxLength", data.get("max_length")),
            min=data.get("min"),
            max=data.get("max"),
            options=data.get("options"),
            required=bool(data.get("required", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "pattern": self.pattern,
            "minLength": self.min_length,
            "maxLength": self.max_length,
            "min": self.min,
            "max": self.max,
            "options": self.options,
        }
        data = {k: v for k, v in data.items() if v is not None}
        if self.required:
            data["required"] = True
        return data


@dataclass
class ConfigEntry:
    """One configuration value at a (category, key, environment) coordinate."""

    id: int
    category: str
    key: str
    value: str | None = None
    value_type: ValueType = ValueType.STRING
    is_encrypted: bool = False
    is_active: bool = True
    environment: Environment = Environment.DEVELOPMENT
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def parsed_value(self) -> Any:
        return parse_value(self.value, self.value_type)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConfigEntry":
        """Build from a ``system_configurations`` row (RealDictCursor)."""
        return cls(
            id=row["id"],
            category=row["category"],
            key=row["config_key"],
            value=row.get("config_value"),
            value_type=ValueType(row.get("value_type") or ValueType.STRING),
            is_encrypted=bool(row.get("is_encrypted", False)),
            is_active=bool(row.get("is_active", True)),
            environment=Environment(row.get("environment") or Environment.DEVELOPMENT),
            updated_by=str(row["updated_by"]) if row.get("updated_by") is not None else None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class ConfigMetadata:
    """Display and validation descriptor for a (category, key), environment-independent."""

    category: str
    key: str
    display_name: str
    description: str | None = None
    input_type: InputType = InputType.TEXT
    validation_rules: ValidationRules | None = None
    default_value: str | None = None
    is_required: bool = False
    sort_order: int = 0
    group_name: str | None = None
    help_text: str | None = None
    id: int | None = None  # Set by database
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConfigMetadata":
        """Build from a ``configuration_metadata`` row."""
        return cls(
            id=row.get("id"),
            category=row["category"],
            key=row["config_key"],
            display_name=row["display_name"],
            description=row.get("description"),
            input_type=InputType(row.get("input_type") or InputType.TEXT),
            validation_rules=ValidationRules.from_dict(row.get("validation_rules")),
            default_value=row.get("default_value"),
            is_required=bool(row.get("is_required", False)),
            sort_order=row.get("sort_order") or 0,
            group_name=row.get("group_name"),
            help_text=row.get("help_text"),
            created_at=row.get("created_at"),
        )


@dataclass
class ConfigEntryWithMetadata:
    """An entry joined with its optional metadata."""

    entry: ConfigEntry
    metadata: ConfigMetadata | None = None

    @property
    def group_name(self) -> str:
        if self.metadata and self.metadata.group_name:
            return self.metadata.group_name
        return DEFAULT_GROUP

    @property
    def display_name(self) -> str:
        return self.metadata.display_name if self.metadata else self.entry.key

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConfigEntryWithMetadata":
        """Build from an entry row left-joined with ``cm.*`` columns prefixed ``meta_``."""
        metadata = None
        if row.get("meta_display_name") is not None:
            metadata = ConfigMetadata(
                category=row["category"],
                key=row["config_key"],
                display_name=row["meta_display_name"],
                description=row.get("meta_description"),
                input_type=InputType(row.get("meta_input_type") or InputType.TEXT),
                validation_rules=ValidationRules.from_dict(row.get("meta_validation_rules")),
                default_value=row.get("meta_default_value"),
                is_required=bool(row.get("meta_is_required", False)),
                sort_order=row.get("meta_sort_order") or 0,
                group_name=row.get("meta_group_name"),
                help_text=row.get("meta_help_text"),
            )
        return cls(entry=ConfigEntry.from_row(row), metadata=metadata)


@dataclass
class HistoryEntry:
    """Append-only audit record of one mutation."""

    config_id: int
    old_value: str | None = None
    new_value: str | None = None
    changed_by: str | None = None
    change_reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None  # Set by database
    created_at: datetime | None = None
    # Joined coordinate of the owning entry, when the query provides it
    category: str | None = None
    key: str | None = None
    environment: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=row.get("id"),
            config_id=row["config_id"],
            old_value=row.get("old_value"),
            new_value=row.get("new_value"),
            changed_by=str(row["changed_by"]) if row.get("changed_by") is not None else None,
            change_reason=row.get("change_reason"),
            ip_address=str(row["ip_address"]) if row.get("ip_address") is not None else None,
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at"),
            category=row.get("category"),
            key=row.get("config_key"),
            environment=row.get("environment"),
        )


@dataclass
class MutationContext:
    """Who changed something, from where, and why."""

    actor: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    reason: str | None = None


@dataclass
class ConfigUpdate:
    """Partial update of an entry; None fields are left unchanged."""

    value: str | None = None
    value_type: ValueType | None = None
    is_encrypted: bool | None = None
    is_active: bool | None = None


@dataclass
class BulkUpdateItem:
    id: int
    value: str | None = None
    is_active: bool | None = None


@dataclass
class MetadataUpdate:
    """Partial update of a metadata row; None fields are left unchanged."""

    display_name: str | None = None
    description: str | None = None
    input_type: InputType | None = None
    validation_rules: ValidationRules | None = None
    default_value: str | None = None
    is_required: bool | None = None
    sort_order: int | None = None
    group_name: str | None = None
    help_text: str | None = None


@dataclass
class SearchParams:
    """Filters, paging and ordering for entry search."""

    category: str | None = None
    key: str | None = None  # substring
    environment: Environment | None = None
    is_active: bool | None = None
    is_encrypted: bool | None = None
    group_name: str | None = None
    text: str | None = None  # key, display name or description
    page: int = 1
    page_size: int = 50
    sort_field: str = "key"
    sort_dir: str = "asc"


@dataclass
class Page(Generic[T]):
    """One page of a paginated listing."""

    items: list[T]
    total: int
    page: int = 1
    page_size: int = 50

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)


@dataclass
class ChangeStatistics:
    total_changes: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    by_actor: dict[str, int] = field(default_factory=dict)
    by_day: dict[str, int] = field(default_factory=dict)  # ISO date -> count, last 30 days
