"""Effective configuration of a category layered from defaults, env vars and the store."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from configcenter.cache.config_cache import ConfigCache, NullConfigCache
from configcenter.domain.config import ConfigMetadata, Environment, InputType
from configcenter.domain.errors import CacheUnavailableError
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param
from configcenter.repository.metadata_repository import MetadataRepository
from configcenter.services.config_service import ConfigService


class SourceName(str, Enum):
    DEFAULT = "default"
    ENVIRONMENT = "environment"
    CACHE = "cache"
    DATABASE = "database"


SOURCE_PRIORITY = {
    SourceName.DEFAULT: 1,
    SourceName.ENVIRONMENT: 2,
    SourceName.CACHE: 3,
    SourceName.DATABASE: 4,
}


@dataclass
class ConfigSource:
    """One contributing layer of a merge."""

    name: SourceName
    values: dict[str, Any]
    updated_at: datetime | None = None

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY[self.name]


@dataclass
class MergedConfiguration:
    category: str
    environment: Environment
    values: dict[str, Any]
    sources: list[ConfigSource] = field(default_factory=list)
    merged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def source_of(self, key: str) -> SourceName | None:
        """Highest-priority layer that supplied ``key``."""
        for source in sorted(self.sources, key=lambda s: s.priority, reverse=True):
            if key in source.values:
                return source.name
        return None


def env_var_name(category: str, key: str) -> str:
    return f"{category.upper()}_{key.upper()}"


def coerce_by_input_type(value: str, input_type: InputType) -> Any:
    """Coerce default and env var text by the key's form control."""
    if input_type is InputType.NUMBER:
        try:
            number = float(value)
        except ValueError:
            return value
        return int(number) if number.is_integer() and "." not in value else number
    if input_type is InputType.CHECKBOX:
        return value.strip().lower() in ("true", "1")
    return value


class MergeResolver:
    """
    Layers a category's sources by priority, highest wins per key.

    Priorities: default (1) < environment variable (2) < cache (3) <
    database (4). The store is read through the cache, so a merge contains
    either the cache layer or the database layer, never both: a fresh
    snapshot stands in for the database, a miss reads the database and
    repopulates the snapshot. Cache failures degrade to a miss.
    """

    def __init__(
        self,
        config_service: ConfigService,
        metadata_repository: MetadataRepository,
        cache: ConfigCache | None = None,
        environ: Mapping[str, str] | None = None,
        cache_ttl_s: int | None = None,
    ) -> None:
        self.config_service = config_service
        self.metadata = metadata_repository
        self.cache: ConfigCache = cache or NullConfigCache()
        self.environ = environ if environ is not None else os.environ
        self.cache_ttl_s = cache_ttl_s
        self.logger = get_logger().with_category(Category.MERGE)

    async def merge(
        self,
        category: str,
        environment: Environment | None = None,
    ) -> MergedConfiguration:
        environment = self.config_service.resolve_environment(environment)
        metadata = self.metadata.find_by_category(category)

        layers = [
            self._defaults(metadata),
            self._environment(category, metadata),
            await self._store(category, environment),
        ]
        sources = sorted((layer for layer in layers if layer.values), key=lambda s: s.priority)

        values: dict[str, Any] = {}
        for source in sources:
            values.update(source.values)

        merged = MergedConfiguration(
            category=category,
            environment=environment,
            values=values,
            sources=sources,
        )
        self.logger.debug(
            "Configuration merged",
            param("category", category),
            param("environment", environment.value),
            param("sources", [source.name.value for source in sources]),
            param("keys", len(values)),
        )
        return merged

    @staticmethod
    def _defaults(metadata: list[ConfigMetadata]) -> ConfigSource:
        values = {
            item.key: coerce_by_input_type(item.default_value, item.input_type)
            for item in metadata
            if item.default_value is not None
        }
        created = [item.created_at for item in metadata if item.created_at is not None]
        return ConfigSource(SourceName.DEFAULT, values, max(created) if created else None)

    def _environment(self, category: str, metadata: list[ConfigMetadata]) -> ConfigSource:
        values: dict[str, Any] = {}
        for item in metadata:
            raw = self.environ.get(env_var_name(category, item.key))
            if raw is not None:
                values[item.key] = coerce_by_input_type(raw, item.input_type)
        return ConfigSource(SourceName.ENVIRONMENT, values)

    async def _store(self, category: str, environment: Environment) -> ConfigSource:
        try:
            snapshot = await self.cache.get(category, environment)
        except CacheUnavailableError as e:
            self.logger.warn(
                "Cache read failed, reading database",
                param("category", category),
                param("error", str(e)),
            )
            snapshot = None
        if snapshot is not None:
            return ConfigSource(SourceName.CACHE, dict(snapshot.values), snapshot.stored_at)

        entries = self.config_service.find_by_category(category, environment)
        values = {entry.key: self.config_service.typed_value(entry) for entry in entries}
        updated = [entry.updated_at for entry in entries if entry.updated_at is not None]

        try:
            await self.cache.set_with_ttl(category, environment, values, self.cache_ttl_s)
        except CacheUnavailableError as e:
            self.logger.warn(
                "Cache populate failed",
                param("category", category),
                param("error", str(e)),
            )
        return ConfigSource(SourceName.DATABASE, values, max(updated) if updated else None)
