"""Configuration entry repository for PostgreSQL."""

from typing import Any

from psycopg2.errors import UniqueViolation
from psycopg2.extras import RealDictCursor

from configcenter.database.postgres import PostgresClient
from configcenter.domain.config import (
    BulkUpdateItem,
    ConfigEntry,
    ConfigEntryWithMetadata,
    ConfigUpdate,
    Environment,
    SearchParams,
    ValueType,
)
from configcenter.domain.errors import DuplicateKeyError, NotFoundError
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

WITH_METADATA_SELECT = """
    SELECT sc.*,
           cm.display_name AS meta_display_name,
           cm.description AS meta_description,
           cm.input_type AS meta_input_type,
           cm.validation_rules AS meta_validation_rules,
           cm.default_value AS meta_default_value,
           cm.is_required AS meta_is_required,
           cm.sort_order AS meta_sort_order,
           cm.group_name AS meta_group_name,
           cm.help_text AS meta_help_text
    FROM system_configurations sc
    LEFT JOIN configuration_metadata cm
           ON sc.category = cm.category AND sc.config_key = cm.config_key
"""

SEARCH_FROM = """
    FROM system_configurations sc
    LEFT JOIN configuration_metadata cm
           ON sc.category = cm.category AND sc.config_key = cm.config_key
"""

SORT_COLUMNS = {
    "key": "sc.config_key",
    "category": "sc.category",
    "updated_at": "sc.updated_at",
    "created_at": "sc.created_at",
}


class ConfigRepository:
    """Repository for ``system_configurations`` rows."""

    def __init__(self, postgres_client: PostgresClient) -> None:
        """
        Initialize ConfigRepository.

        Args:
            postgres_client: PostgreSQL client instance
        """
        self.postgres = postgres_client
        self.logger = get_logger().with_category(Category.STORE)

    def create(
        self,
        category: str,
        key: str,
        value: str | None,
        value_type: ValueType = ValueType.STRING,
        environment: Environment = Environment.DEVELOPMENT,
        is_encrypted: bool = False,
        is_active: bool = True,
        updated_by: str | None = None,
    ) -> ConfigEntry:
        """
        Insert a new entry.

        Raises:
            DuplicateKeyError: (category, key, environment) already exists
        """
        try:
            with self.postgres.transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        """
                        INSERT INTO system_configurations (
                            category, config_key, config_value, value_type,
                            is_encrypted, is_active, environment, updated_by
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            category,
                            key,
                            value,
                            ValueType(value_type).value,
                            is_encrypted,
                            is_active,
                            Environment(environment).value,
                            updated_by,
                        ),
                    )
                    row = cur.fetchone()
        except UniqueViolation as e:
            raise DuplicateKeyError(category, key, Environment(environment).value) from e

        entry = ConfigEntry.from_row(row)
        self.logger.info(
            "Configuration created",
            param("id", entry.id),
            param("category", category),
            param("key", key),
            param("environment", entry.environment.value),
        )
        return entry

    def get_by_id(self, config_id: int) -> ConfigEntry | None:
        row = self._fetch_one(
            "SELECT * FROM system_configurations WHERE id = %s",
            (config_id,),
        )
        return ConfigEntry.from_row(row) if row else None

    def find_by_key(
        self,
        category: str,
        key: str,
        environment: Environment = Environment.DEVELOPMENT,
    ) -> ConfigEntry | None:
        row = self._fetch_one(
            """
            SELECT * FROM system_configurations
            WHERE category = %s AND config_key = %s AND environment = %s
            """,
            (category, key, Environment(environment).value),
        )
        return ConfigEntry.from_row(row) if row else None

    def find_by_category(
        self,
        category: str,
        environment: Environment = Environment.DEVELOPMENT,
        include_inactive: bool = False,
    ) -> list[ConfigEntry]:
        """Entries of a category ordered by key."""
        query = "SELECT * FROM system_configurations WHERE category = %s AND environment = %s"
        if not include_inactive:
            query += " AND is_active = TRUE"
        query += " ORDER BY config_key"
        rows = self._fetch_all(query, (category, Environment(environment).value))
        return [ConfigEntry.from_row(row) for row in rows]

    def find_with_metadata(
        self,
        category: str,
        environment: Environment = Environment.DEVELOPMENT,
        include_inactive: bool = False,
    ) -> list[ConfigEntryWithMetadata]:
        query = WITH_METADATA_SELECT + " WHERE sc.category = %s AND sc.environment = %s"
        if not include_inactive:
            query += " AND sc.is_active = TRUE"
        query += " ORDER BY cm.sort_order NULLS LAST, sc.config_key"
        rows = self._fetch_all(query, (category, Environment(environment).value))
        return [ConfigEntryWithMetadata.from_row(row) for row in rows]

    def search(self, params: SearchParams) -> tuple[list[ConfigEntryWithMetadata], int]:
        """
        Filtered, paginated search across entries and their metadata.

        Returns:
            Tuple (page rows, total matching rows)
        """
        conditions: list[str] = []
        args: list[Any] = []

        if params.category:
            conditions.append("sc.category = %s")
            args.append(params.category)
        if params.key:
            conditions.append("sc.config_key ILIKE %s")
            args.append(f"%{params.key}%")
        if params.environment:
            conditions.append("sc.environment = %s")
            args.append(Environment(params.environment).value)
        if params.is_active is not None:
            conditions.append("sc.is_active = %s")
            args.append(params.is_active)
        if params.is_encrypted is not None:
            conditions.append("sc.is_encrypted = %s")
            args.append(params.is_encrypted)
        if params.group_name:
            conditions.append("cm.group_name = %s")
            args.append(params.group_name)
        if params.text:
            conditions.append(
                "(sc.config_key ILIKE %s OR cm.display_name ILIKE %s OR cm.description ILIKE %s)"
            )
            pattern = f"%{params.text}%"
            args.extend([pattern, pattern, pattern])

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        sort_column = SORT_COLUMNS.get(params.sort_field, "sc.config_key")
        sort_dir = "DESC" if params.sort_dir.lower() == "desc" else "ASC"
        page = max(params.page, 1)
        page_size = max(params.page_size, 1)

        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT COUNT(sc.id) AS count" + SEARCH_FROM + where, tuple(args))
                total = int(cur.fetchone()["count"])
                cur.execute(
                    WITH_METADATA_SELECT
                    + where
                    + f" ORDER BY {sort_column} {sort_dir}, sc.id LIMIT %s OFFSET %s",
                    (*args, page_size, (page - 1) * page_size),
                )
                rows = cur.fetchall()

        return [ConfigEntryWithMetadata.from_row(row) for row in rows], total

    def update(
        self,
        config_id: int,
        changes: ConfigUpdate,
        updated_by: str | None = None,
    ) -> ConfigEntry | None:
        """Apply a partial update; returns None when the id does not exist."""
        assignments, args = self._assignments(
            value=changes.value,
            value_type=ValueType(changes.value_type).value if changes.value_type else None,
            is_encrypted=changes.is_encrypted,
            is_active=changes.is_active,
            updated_by=updated_by,
        )
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"UPDATE system_configurations SET {assignments} WHERE id = %s RETURNING *",
                    (*args, config_id),
                )
                row = cur.fetchone()

        if row is None:
            return None
        self.logger.info(
            "Configuration updated",
            param("id", config_id),
            param("updated_by", updated_by),
        )
        return ConfigEntry.from_row(row)

    def bulk_update(
        self,
        items: list[BulkUpdateItem],
        updated_by: str | None = None,
    ) -> list[ConfigEntry]:
        """
        Apply every item inside one transaction.

        Raises:
            NotFoundError: an id does not exist; nothing is applied
        """
        updated: list[ConfigEntry] = []
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                for item in items:
                    assignments, args = self._assignments(
                        value=item.value,
                        is_active=item.is_active,
                        updated_by=updated_by,
                    )
                    cur.execute(
                        f"UPDATE system_configurations SET {assignments} "
                        "WHERE id = %s RETURNING *",
                        (*args, item.id),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise NotFoundError("Configuration", id=item.id)
                    updated.append(ConfigEntry.from_row(row))

        self.logger.info(
            "Configurations bulk updated",
            param("count", len(updated)),
            param("updated_by", updated_by),
        )
        return updated

    def delete(self, config_id: int) -> bool:
        with self.postgres.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM system_configurations WHERE id = %s", (config_id,))
                deleted = cur.rowcount > 0
        if deleted:
            self.logger.info("Configuration deleted", param("id", config_id))
        return deleted

    def exists(
        self,
        category: str,
        key: str,
        environment: Environment,
        exclude_id: int | None = None,
    ) -> bool:
        query = (
            "SELECT 1 FROM system_configurations "
            "WHERE category = %s AND config_key = %s AND environment = %s"
        )
        args: list[Any] = [category, key, Environment(environment).value]
        if exclude_id is not None:
            query += " AND id <> %s"
            args.append(exclude_id)
        return self._fetch_one(query + " LIMIT 1", tuple(args)) is not None

    def get_categories(self, environment: Environment | None = None) -> list[str]:
        if environment:
            rows = self._fetch_all(
                "SELECT DISTINCT category FROM system_configurations "
                "WHERE environment = %s ORDER BY category",
                (Environment(environment).value,),
            )
        else:
            rows = self._fetch_all(
                "SELECT DISTINCT category FROM system_configurations ORDER BY category", ()
            )
        return [row["category"] for row in rows]

    def get_environments(self) -> list[Environment]:
        rows = self._fetch_all(
            "SELECT DISTINCT environment FROM system_configurations ORDER BY environment", ()
        )
        return [Environment(row["environment"]) for row in rows]

    @staticmethod
    def _assignments(updated_by: str | None, **changes: Any) -> tuple[str, list[Any]]:
        """SET clause for the non-None ``changes`` plus audit columns."""
        columns = {
            "value": "config_value",
            "value_type": "value_type",
            "is_encrypted": "is_encrypted",
            "is_active": "is_active",
        }
        parts = ["updated_by = %s", "updated_at = NOW()"]
        args: list[Any] = [updated_by]
        for name, value in changes.items():
            if value is not None:
                parts.append(f"{columns[name]} = %s")
                args.append(value)
        return ", ".join(parts), args

    def _fetch_one(self, query: str, args: tuple[Any, ...]) -> dict[str, Any] | None:
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, args)
                return cur.fetchone()

    def _fetch_all(self, query: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, args)
                return cur.fetchall()
