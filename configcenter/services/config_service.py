"""Configuration store facade: validated writes with audit, cache and change events."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from configcenter.cache.config_cache import ConfigCache, NullConfigCache
from configcenter.domain.config import (
    DEFAULT_GROUP,
    FEATURE_TOGGLE_CATEGORY,
    BulkUpdateItem,
    ChangeStatistics,
    ConfigEntry,
    ConfigEntryWithMetadata,
    ConfigUpdate,
    Environment,
    HistoryEntry,
    MutationContext,
    Page,
    SearchParams,
    ValueType,
    parse_value,
    serialize_value,
)
from configcenter.domain.errors import (
    CacheUnavailableError,
    DuplicateKeyError,
    NotFoundError,
    ValidationFailedError,
)
from configcenter.domain.events import (
    TOPIC_CONFIG_CHANGED,
    ChangeEvent,
    ConfigCreated,
    ConfigDeleted,
    ConfigUpdated,
    category_changed_topic,
)
from configcenter.domain.validation import validate_value
from configcenter.events.bus import EventBus
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param
from configcenter.repository.config_repository import ConfigRepository
from configcenter.repository.history_repository import HistoryRepository
from configcenter.repository.metadata_repository import MetadataRepository
from configcenter.services.encryption import PlaintextCipher, ValueCipher

_TRUE_VALUES = ("true", "1")


class ConfigService:
    """
    Entry point for every configuration read and write.

    Each successful write runs the same pipeline: validate against the key's
    metadata, persist, append one history row per entry, refresh the cache
    snapshot of the affected (category, environment), then publish one change
    event per entry. A failed publish is logged and never fails the write.
    """

    def __init__(
        self,
        config_repository: ConfigRepository,
        metadata_repository: MetadataRepository,
        history_repository: HistoryRepository,
        cache: ConfigCache | None = None,
        bus: EventBus | None = None,
        cipher: ValueCipher | None = None,
        audit_log: bool = True,
        encryption: bool = False,
        cache_ttl_s: int | None = None,
        default_environment: Environment = Environment.DEVELOPMENT,
    ) -> None:
        """
        Initialize ConfigService.

        Args:
            config_repository: Entry repository
            metadata_repository: Metadata registry
            history_repository: Audit ledger
            cache: Snapshot cache; a null cache when omitted
            bus: Event bus for change events; nothing is published when omitted
            cipher: Cipher for encrypted values
            audit_log: Append history rows on writes
            encryption: Apply the cipher to entries flagged ``is_encrypted``
            cache_ttl_s: TTL of refreshed snapshots; the cache default when None
            default_environment: Environment used when a call names none
        """
        self.entries = config_repository
        self.metadata = metadata_repository
        self.history = history_repository
        self.cache: ConfigCache = cache or NullConfigCache()
        self.bus = bus
        self.cipher: ValueCipher = cipher or PlaintextCipher()
        self.audit_log = audit_log
        self.encryption = encryption
        self.cache_ttl_s = cache_ttl_s
        self.default_environment = Environment(default_environment)
        self.logger = get_logger().with_category(Category.STORE)

    # Writes

    async def create(
        self,
        category: str,
        key: str,
        value: str | None,
        value_type: ValueType = ValueType.STRING,
        environment: Environment | None = None,
        is_encrypted: bool = False,
        is_active: bool = True,
        context: MutationContext | None = None,
    ) -> ConfigEntry:
        """
        Create an entry.

        Raises:
            DuplicateKeyError: (category, key, environment) already exists
            ValidationFailedError: value violates the key's metadata rules
        """
        context = context or MutationContext()
        environment = self.resolve_environment(environment)
        if self.entries.exists(category, key, environment):
            raise DuplicateKeyError(category, key, environment.value)
        self._validate(category, key, value)

        entry = self.entries.create(
            category=category,
            key=key,
            value=self._seal(value, is_encrypted),
            value_type=value_type,
            environment=environment,
            is_encrypted=is_encrypted,
            is_active=is_active,
            updated_by=context.actor,
        )

        self._record(entry.id, None, entry.value, context)
        await self._refresh_cache(category, environment)
        await self._publish(
            ConfigCreated(
                category=category,
                key=key,
                environment=environment,
                actor=context.actor,
                reason=context.reason,
                new_value=entry.value,
            )
        )
        return entry

    async def update(
        self,
        config_id: int,
        changes: ConfigUpdate,
        context: MutationContext | None = None,
    ) -> ConfigEntry:
        """
        Apply a partial update.

        Raises:
            NotFoundError: id does not exist
            ValidationFailedError: new value violates the key's metadata rules
        """
        context = context or MutationContext()
        existing = self.get(config_id)
        encrypted = (
            changes.is_encrypted if changes.is_encrypted is not None else existing.is_encrypted
        )
        value = changes.value
        if value is not None:
            self._validate(existing.category, existing.key, value)
            value = self._seal(value, encrypted)
        elif encrypted != existing.is_encrypted and self.encryption and existing.value is not None:
            # Flag flipped without a new value: re-store the current value in the new form
            value = (
                self.cipher.encrypt(existing.value)
                if encrypted
                else self.cipher.decrypt(existing.value)
            )
        changes = ConfigUpdate(
            value=value,
            value_type=changes.value_type,
            is_encrypted=changes.is_encrypted,
            is_active=changes.is_active,
        )

        entry = self.entries.update(config_id, changes, updated_by=context.actor)
        if entry is None:
            raise NotFoundError("Configuration", id=config_id)

        self._record(entry.id, existing.value, entry.value, context)
        await self._refresh_cache(entry.category, entry.environment)
        await self._publish(
            ConfigUpdated(
                category=entry.category,
                key=entry.key,
                environment=entry.environment,
                actor=context.actor,
                reason=context.reason,
                old_value=existing.value,
                new_value=entry.value,
            )
        )
        return entry

    async def bulk_update(
        self,
        items: Sequence[BulkUpdateItem],
        context: MutationContext | None = None,
    ) -> list[ConfigEntry]:
        """
        Update several entries all-or-nothing.

        Every id is resolved and every value validated before anything is
        written; the repository then applies all rows in one transaction.

        Raises:
            NotFoundError: an id does not exist
            ValidationFailedError: a value violates its key's metadata rules
        """
        context = context or MutationContext()
        if not items:
            return []

        before: dict[int, ConfigEntry] = {}
        sealed: list[BulkUpdateItem] = []
        for item in items:
            existing = self.get(item.id)
            before[item.id] = existing
            if item.value is not None:
                self._validate(existing.category, existing.key, item.value)
            sealed.append(
                BulkUpdateItem(
                    id=item.id,
                    value=self._seal(item.value, existing.is_encrypted),
                    is_active=item.is_active,
                )
            )

        updated = self.entries.bulk_update(sealed, updated_by=context.actor)

        for entry in updated:
            self._record(entry.id, before[entry.id].value, entry.value, context)

        for category, environment in dict.fromkeys((e.category, e.environment) for e in updated):
            await self._refresh_cache(category, environment)

        for entry in updated:
            await self._publish(
                ConfigUpdated(
                    category=entry.category,
                    key=entry.key,
                    environment=entry.environment,
                    actor=context.actor,
                    reason=context.reason,
                    old_value=before[entry.id].value,
                    new_value=entry.value,
                )
            )
        return updated

    async def delete(self, config_id: int, context: MutationContext | None = None) -> bool:
        """Delete an entry; False when it does not exist."""
        context = context or MutationContext()
        existing = self.entries.get_by_id(config_id)
        if existing is None:
            return False
        if not self.entries.delete(config_id):
            return False

        self._record(existing.id, existing.value, None, context)
        await self._refresh_cache(existing.category, existing.environment)
        await self._publish(
            ConfigDeleted(
                category=existing.category,
                key=existing.key,
                environment=existing.environment,
                actor=context.actor,
                reason=context.reason,
                old_value=existing.value,
            )
        )
        return True

    # Reads

    def get(self, config_id: int) -> ConfigEntry:
        """
        Raises:
            NotFoundError: id does not exist
        """
        entry = self.entries.get_by_id(config_id)
        if entry is None:
            raise NotFoundError("Configuration", id=config_id)
        return entry

    def find_by_key(
        self,
        category: str,
        key: str,
        environment: Environment | None = None,
    ) -> ConfigEntry | None:
        return self.entries.find_by_key(category, key, self.resolve_environment(environment))

    def find_by_category(
        self,
        category: str,
        environment: Environment | None = None,
        include_inactive: bool = False,
    ) -> list[ConfigEntry]:
        return self.entries.find_by_category(
            category, self.resolve_environment(environment), include_inactive
        )

    def search(self, params: SearchParams) -> Page[ConfigEntryWithMetadata]:
        items, total = self.entries.search(params)
        return Page(
            items=items,
            total=total,
            page=max(params.page, 1),
            page_size=max(params.page_size, 1),
        )

    def get_values(
        self,
        category: str,
        environment: Environment | None = None,
        active_only: bool = True,
    ) -> dict[str, Any]:
        """Typed values of a category keyed by config key."""
        entries = self.entries.find_by_category(
            category, self.resolve_environment(environment), include_inactive=not active_only
        )
        return {entry.key: self.typed_value(entry) for entry in entries}

    def get_category_view(
        self,
        category: str,
        environment: Environment | None = None,
        include_inactive: bool = False,
    ) -> dict[str, list[ConfigEntryWithMetadata]]:
        """Entries with metadata grouped by group name."""
        grouped: dict[str, list[ConfigEntryWithMetadata]] = {}
        for item in self.entries.find_with_metadata(
            category, self.resolve_environment(environment), include_inactive
        ):
            grouped.setdefault(item.group_name or DEFAULT_GROUP, []).append(item)
        return grouped

    def list_categories(self, environment: Environment | None = None) -> list[str]:
        return self.entries.get_categories(environment)

    def list_environments(self) -> list[Environment]:
        return self.entries.get_environments()

    def validate(self, category: str, key: str, value: str | None) -> list[str]:
        """Violations of ``value`` against the metadata of (category, key)."""
        metadata = self.metadata.find_by_key(category, key)
        if metadata is None:
            return []
        return validate_value(metadata.validation_rules, value, metadata.is_required)

    # Feature toggles

    def get_all_feature_toggles(
        self,
        environment: Environment | None = None,
        include_inactive: bool = False,
    ) -> dict[str, bool]:
        entries = self.entries.find_by_category(
            FEATURE_TOGGLE_CATEGORY, self.resolve_environment(environment), include_inactive
        )
        return {entry.key: entry.value in _TRUE_VALUES for entry in entries}

    def is_feature_enabled(
        self,
        name: str,
        environment: Environment | None = None,
    ) -> bool:
        """Stored value, else the metadata default, else False."""
        environment = self.resolve_environment(environment)
        entry = self.entries.find_by_key(FEATURE_TOGGLE_CATEGORY, name, environment)
        if entry is not None and entry.is_active:
            return entry.value in _TRUE_VALUES

        metadata = self.metadata.find_by_key(FEATURE_TOGGLE_CATEGORY, name)
        if metadata is not None and metadata.default_value is not None:
            return metadata.default_value in _TRUE_VALUES
        return False

    async def set_feature_toggle(
        self,
        name: str,
        enabled: bool,
        environment: Environment | None = None,
        context: MutationContext | None = None,
    ) -> ConfigEntry:
        environment = self.resolve_environment(environment)
        existing = self.entries.find_by_key(FEATURE_TOGGLE_CATEGORY, name, environment)
        if existing is not None:
            return await self.update(
                existing.id, ConfigUpdate(value=serialize_value(enabled)), context
            )
        return await self.create(
            FEATURE_TOGGLE_CATEGORY,
            name,
            serialize_value(enabled),
            value_type=ValueType.BOOLEAN,
            environment=environment,
            context=context,
        )

    async def bulk_update_feature_toggles(
        self,
        toggles: dict[str, bool],
        environment: Environment | None = None,
        context: MutationContext | None = None,
    ) -> list[ConfigEntry]:
        """
        Set several toggles at once.

        Existing toggles go through one bulk update; missing toggles are
        created one by one, each with its own creation history row.
        """
        environment = self.resolve_environment(environment)
        items: list[BulkUpdateItem] = []
        missing: list[tuple[str, bool]] = []
        for name, enabled in toggles.items():
            existing = self.entries.find_by_key(FEATURE_TOGGLE_CATEGORY, name, environment)
            if existing is None:
                missing.append((name, enabled))
            else:
                items.append(BulkUpdateItem(id=existing.id, value=serialize_value(enabled)))

        results = await self.bulk_update(items, context) if items else []
        for name, enabled in missing:
            results.append(
                await self.create(
                    FEATURE_TOGGLE_CATEGORY,
                    name,
                    serialize_value(enabled),
                    value_type=ValueType.BOOLEAN,
                    environment=environment,
                    context=context,
                )
            )
        return results

    # History

    def get_history(
        self, config_id: int, page: int = 1, page_size: int = 50
    ) -> Page[HistoryEntry]:
        return self.history.find_by_config(config_id, page, page_size)

    def get_category_history(
        self,
        category: str,
        environment: Environment | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page[HistoryEntry]:
        return self.history.find_by_category(
            category, environment, date_from, date_to, page, page_size
        )

    def get_actor_history(
        self,
        actor: str,
        category: str | None = None,
        environment: Environment | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page[HistoryEntry]:
        return self.history.find_by_actor(
            actor, category, environment, page=page, page_size=page_size
        )

    def get_change_statistics(
        self,
        category: str | None = None,
        environment: Environment | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> ChangeStatistics:
        return self.history.change_statistics(category, environment, date_from, date_to)

    def purge_history(self, days: int, category: str | None = None) -> int:
        return self.history.purge_older_than(days, category)

    def purge_orphaned_history(self) -> int:
        return self.history.purge_orphaned()

    # Internals

    def resolve_environment(self, environment: Environment | None) -> Environment:
        return Environment(environment) if environment is not None else self.default_environment

    def _validate(self, category: str, key: str, value: str | None) -> None:
        violations = self.validate(category, key, value)
        if violations:
            raise ValidationFailedError(category, key, violations)

    def _seal(self, value: str | None, is_encrypted: bool) -> str | None:
        if value is None or not (is_encrypted and self.encryption):
            return value
        return self.cipher.encrypt(value)

    def typed_value(self, entry: ConfigEntry) -> Any:
        """Decrypted and coerced value of ``entry``."""
        raw = entry.value
        if raw is not None and entry.is_encrypted and self.encryption:
            raw = self.cipher.decrypt(raw)
        return parse_value(raw, entry.value_type)

    def _record(
        self,
        config_id: int,
        old_value: str | None,
        new_value: str | None,
        context: MutationContext,
    ) -> None:
        if not self.audit_log:
            return
        self.history.append(
            config_id=config_id,
            old_value=old_value,
            new_value=new_value,
            changed_by=context.actor,
            change_reason=context.reason,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    async def _refresh_cache(self, category: str, environment: Environment) -> None:
        try:
            await self.cache.set_with_ttl(
                category, environment, self.get_values(category, environment), self.cache_ttl_s
            )
        except CacheUnavailableError as e:
            self.logger.warn(
                "Cache refresh failed",
                param("category", category),
                param("environment", Environment(environment).value),
                param("error", str(e)),
            )

    async def _publish(self, event: ChangeEvent) -> None:
        if self.bus is None:
            return
        payload = event.to_payload()
        payload["event_type"] = event.event_type
        for topic in (TOPIC_CONFIG_CHANGED, category_changed_topic(event.category)):
            try:
                await self.bus.publish(topic, payload)
            except Exception as e:
                self.logger.error(
                    "Failed to publish change event",
                    e,
                    param("topic", topic),
                    param("category", event.category),
                    param("key", event.key),
                )
