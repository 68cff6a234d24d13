"""Configuration metadata repository for PostgreSQL."""

import json
from typing import Any

from psycopg2.errors import UniqueViolation
from psycopg2.extensions import cursor as Cursor
from psycopg2.extras import RealDictCursor

from configcenter.database.postgres import PostgresClient
from configcenter.domain.config import DEFAULT_GROUP, ConfigMetadata, InputType, MetadataUpdate
from configcenter.domain.errors import DuplicateKeyError, TargetNotEmptyError
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

INSERT_METADATA_SQL = """
    INSERT INTO configuration_metadata (
        category, config_key, display_name, description, input_type,
        validation_rules, default_value, is_required, sort_order,
        group_name, help_text
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    RETURNING *
"""


class MetadataRepository:
    """Repository for ``configuration_metadata`` rows, one per (category, key)."""

    def __init__(self, postgres_client: PostgresClient) -> None:
        self.postgres = postgres_client
        self.logger = get_logger().with_category(Category.METADATA)

    def create(self, metadata: ConfigMetadata) -> ConfigMetadata:
        """
        Insert a metadata row.

        Raises:
            DuplicateKeyError: (category, key) already has metadata
        """
        try:
            with self.postgres.transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    created = self._insert(cur, metadata)
        except UniqueViolation as e:
            raise DuplicateKeyError(metadata.category, metadata.key) from e

        self.logger.info(
            "Metadata created",
            param("category", metadata.category),
            param("key", metadata.key),
        )
        return created

    def get(self, metadata_id: int) -> ConfigMetadata | None:
        row = self._fetch_one("SELECT * FROM configuration_metadata WHERE id = %s", (metadata_id,))
        return ConfigMetadata.from_row(row) if row else None

    def find_by_key(self, category: str, key: str) -> ConfigMetadata | None:
        row = self._fetch_one(
            "SELECT * FROM configuration_metadata WHERE category = %s AND config_key = %s",
            (category, key),
        )
        return ConfigMetadata.from_row(row) if row else None

    def find_by_category(self, category: str) -> list[ConfigMetadata]:
        """Metadata of a category ordered by sort order, then key."""
        rows = self._fetch_all(
            "SELECT * FROM configuration_metadata WHERE category = %s "
            "ORDER BY sort_order, config_key",
            (category,),
        )
        return [ConfigMetadata.from_row(row) for row in rows]

    def find_by_category_grouped(self, category: str) -> dict[str, list[ConfigMetadata]]:
        """Metadata of a category keyed by group name; ungrouped rows land in ``general``."""
        grouped: dict[str, list[ConfigMetadata]] = {}
        for metadata in self.find_by_category(category):
            grouped.setdefault(metadata.group_name or DEFAULT_GROUP, []).append(metadata)
        return grouped

    def update(self, metadata_id: int, changes: MetadataUpdate) -> ConfigMetadata | None:
        columns: dict[str, Any] = {
            "display_name": changes.display_name,
            "description": changes.description,
            "input_type": InputType(changes.input_type).value if changes.input_type else None,
            "validation_rules": (
                json.dumps(changes.validation_rules.to_dict())
                if changes.validation_rules is not None
                else None
            ),
            "default_value": changes.default_value,
            "is_required": changes.is_required,
            "sort_order": changes.sort_order,
            "group_name": changes.group_name,
            "help_text": changes.help_text,
        }
        columns = {name: value for name, value in columns.items() if value is not None}
        if not columns:
            return self.get(metadata_id)

        assignments = ", ".join(f"{name} = %s" for name in columns)
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"UPDATE configuration_metadata SET {assignments} WHERE id = %s RETURNING *",
                    (*columns.values(), metadata_id),
                )
                row = cur.fetchone()
        return ConfigMetadata.from_row(row) if row else None

    def delete(self, metadata_id: int) -> bool:
        with self.postgres.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM configuration_metadata WHERE id = %s", (metadata_id,))
                return cur.rowcount > 0

    def exists(self, category: str, key: str, exclude_id: int | None = None) -> bool:
        query = "SELECT 1 FROM configuration_metadata WHERE category = %s AND config_key = %s"
        args: list[Any] = [category, key]
        if exclude_id is not None:
            query += " AND id <> %s"
            args.append(exclude_id)
        return self._fetch_one(query + " LIMIT 1", tuple(args)) is not None

    def get_categories(self) -> list[str]:
        rows = self._fetch_all(
            "SELECT DISTINCT category FROM configuration_metadata ORDER BY category", ()
        )
        return [row["category"] for row in rows]

    def get_groups_by_category(self, category: str) -> list[str]:
        rows = self._fetch_all(
            "SELECT DISTINCT group_name FROM configuration_metadata "
            "WHERE category = %s AND group_name IS NOT NULL ORDER BY group_name",
            (category,),
        )
        return [row["group_name"] for row in rows]

    def bulk_create(self, items: list[ConfigMetadata]) -> list[ConfigMetadata]:
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                return [self._insert(cur, item) for item in items]

    def delete_by_category(self, category: str) -> int:
        with self.postgres.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM configuration_metadata WHERE category = %s", (category,))
                return cur.rowcount

    def clone_to_category(
        self,
        source_category: str,
        target_category: str,
        overwrite: bool = False,
    ) -> list[ConfigMetadata]:
        """
        Copy every metadata row of ``source_category`` to ``target_category``.

        Runs in one transaction: with ``overwrite`` the target's rows are
        deleted first, without it a non-empty target aborts the copy.

        Raises:
            TargetNotEmptyError: target has metadata and overwrite is False
        """
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM configuration_metadata WHERE category = %s "
                    "ORDER BY sort_order, config_key",
                    (source_category,),
                )
                source = [ConfigMetadata.from_row(row) for row in cur.fetchall()]
                if not source:
                    return []

                if overwrite:
                    cur.execute(
                        "DELETE FROM configuration_metadata WHERE category = %s",
                        (target_category,),
                    )
                else:
                    cur.execute(
                        "SELECT 1 FROM configuration_metadata WHERE category = %s LIMIT 1",
                        (target_category,),
                    )
                    if cur.fetchone() is not None:
                        raise TargetNotEmptyError(target_category)

                cloned = [
                    self._insert(
                        cur,
                        ConfigMetadata(
                            category=target_category,
                            key=item.key,
                            display_name=item.display_name,
                            description=item.description,
                            input_type=item.input_type,
                            validation_rules=item.validation_rules,
                            default_value=item.default_value,
                            is_required=item.is_required,
                            sort_order=item.sort_order,
                            group_name=item.group_name,
                            help_text=item.help_text,
                        ),
                    )
                    for item in source
                ]

        self.logger.info(
            "Metadata cloned",
            param("source", source_category),
            param("target", target_category),
            param("count", len(cloned)),
            param("overwrite", overwrite),
        )
        return cloned

    @staticmethod
    def _insert(cur: Cursor, metadata: ConfigMetadata) -> ConfigMetadata:
        cur.execute(
            INSERT_METADATA_SQL,
            (
                metadata.category,
                metadata.key,
                metadata.display_name,
                metadata.description,
                InputType(metadata.input_type).value,
                (
                    json.dumps(metadata.validation_rules.to_dict())
                    if metadata.validation_rules
                    else None
                ),
                metadata.default_value,
                metadata.is_required,
                metadata.sort_order,
                metadata.group_name,
                metadata.help_text,
            ),
        )
        return ConfigMetadata.from_row(cur.fetchone())

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
