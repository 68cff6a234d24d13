"""Configuration history (audit ledger) repository for PostgreSQL."""

from datetime import datetime
from typing import Any

from psycopg2.extras import RealDictCursor

from configcenter.database.postgres import PostgresClient
from configcenter.domain.config import ChangeStatistics, Environment, HistoryEntry, Page
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

HISTORY_WITH_ENTRY_FROM = """
    FROM configuration_history ch
    JOIN system_configurations sc ON ch.config_id = sc.id
"""

HISTORY_WITH_ENTRY_SELECT = (
    "SELECT ch.*, sc.category, sc.config_key, sc.environment" + HISTORY_WITH_ENTRY_FROM
)


class HistoryRepository:
    """Append-only ledger of configuration mutations."""

    def __init__(self, postgres_client: PostgresClient) -> None:
        self.postgres = postgres_client
        self.logger = get_logger().with_category(Category.HISTORY)

    def append(
        self,
        config_id: int,
        old_value: str | None,
        new_value: str | None,
        changed_by: str | None = None,
        change_reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> HistoryEntry:
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO configuration_history (
                        config_id, old_value, new_value, changed_by,
                        change_reason, ip_address, user_agent
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        config_id,
                        old_value,
                        new_value,
                        changed_by,
                        change_reason,
                        ip_address,
                        user_agent,
                    ),
                )
                row = cur.fetchone()

        self.logger.debug(
            "History appended",
            param("config_id", config_id),
            param("changed_by", changed_by),
        )
        return HistoryEntry.from_row(row)

    def find_by_config(
        self,
        config_id: int,
        page: int = 1,
        page_size: int = 50,
        sort_dir: str = "desc",
    ) -> Page[HistoryEntry]:
        """History of one entry; survives the entry's deletion."""
        return self._page(
            count_sql="SELECT COUNT(*) AS count FROM configuration_history ch",
            select_sql="SELECT ch.* FROM configuration_history ch",
            conditions=["ch.config_id = %s"],
            args=[config_id],
            page=page,
            page_size=page_size,
            sort_dir=sort_dir,
        )

    def find_by_category(
        self,
        category: str,
        environment: Environment | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
        sort_dir: str = "desc",
    ) -> Page[HistoryEntry]:
        conditions, args = self._filters(category, environment, date_from, date_to)
        return self._page(
            count_sql="SELECT COUNT(ch.id) AS count" + HISTORY_WITH_ENTRY_FROM,
            select_sql=HISTORY_WITH_ENTRY_SELECT,
            conditions=conditions,
            args=args,
            page=page,
            page_size=page_size,
            sort_dir=sort_dir,
        )

    def find_by_actor(
        self,
        actor: str,
        category: str | None = None,
        environment: Environment | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
        sort_dir: str = "desc",
    ) -> Page[HistoryEntry]:
        conditions, args = self._filters(category, environment, date_from, date_to)
        conditions.insert(0, "ch.changed_by = %s")
        args.insert(0, actor)
        return self._page(
            count_sql="SELECT COUNT(ch.id) AS count" + HISTORY_WITH_ENTRY_FROM,
            select_sql=HISTORY_WITH_ENTRY_SELECT,
            conditions=conditions,
            args=args,
            page=page,
            page_size=page_size,
            sort_dir=sort_dir,
        )

    def change_statistics(
        self,
        category: str | None = None,
        environment: Environment | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> ChangeStatistics:
        """Totals by category, by actor, and by day over the last 30 days."""
        conditions, args = self._filters(category, environment, date_from, date_to)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        day_where = (where + " AND " if where else " WHERE ") + (
            "ch.created_at >= NOW() - INTERVAL '30 days'"
        )
        actor_where = (where + " AND " if where else " WHERE ") + "ch.changed_by IS NOT NULL"

        stats = ChangeStatistics()
        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT COUNT(ch.id) AS count" + HISTORY_WITH_ENTRY_FROM + where, tuple(args)
                )
                stats.total_changes = int(cur.fetchone()["count"])

                cur.execute(
                    "SELECT sc.category, COUNT(ch.id) AS count"
                    + HISTORY_WITH_ENTRY_FROM
                    + where
                    + " GROUP BY sc.category ORDER BY count DESC",
                    tuple(args),
                )
                stats.by_category = {row["category"]: int(row["count"]) for row in cur.fetchall()}

                cur.execute(
                    "SELECT ch.changed_by, COUNT(ch.id) AS count"
                    + HISTORY_WITH_ENTRY_FROM
                    + actor_where
                    + " GROUP BY ch.changed_by ORDER BY count DESC",
                    tuple(args),
                )
                stats.by_actor = {str(row["changed_by"]): int(row["count"]) for row in cur.fetchall()}

                cur.execute(
                    "SELECT DATE(ch.created_at) AS day, COUNT(ch.id) AS count"
                    + HISTORY_WITH_ENTRY_FROM
                    + day_where
                    + " GROUP BY DATE(ch.created_at) ORDER BY day",
                    tuple(args),
                )
                stats.by_day = {row["day"].isoformat(): int(row["count"]) for row in cur.fetchall()}

        return stats

    def purge_older_than(self, days: int, category: str | None = None) -> int:
        """Delete rows older than ``days``; returns the number removed."""
        query = "DELETE FROM configuration_history WHERE created_at < NOW() - make_interval(days => %s)"
        args: list[Any] = [days]
        if category:
            query += " AND config_id IN (SELECT id FROM system_configurations WHERE category = %s)"
            args.append(category)

        with self.postgres.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, tuple(args))
                removed = cur.rowcount

        self.logger.info(
            "Old history purged",
            param("days", days),
            param("category", category),
            param("removed", removed),
        )
        return removed

    def purge_orphaned(self) -> int:
        """Delete rows whose entry no longer exists."""
        with self.postgres.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM configuration_history ch
                    WHERE NOT EXISTS (
                        SELECT 1 FROM system_configurations sc WHERE sc.id = ch.config_id
                    )
                    """
                )
                removed = cur.rowcount

        self.logger.info("Orphaned history purged", param("removed", removed))
        return removed

    @staticmethod
    def _filters(
        category: str | None,
        environment: Environment | None,
        date_from: datetime | None,
        date_to: datetime | None,
    ) -> tuple[list[str], list[Any]]:
        conditions: list[str] = []
        args: list[Any] = []
        if category:
            conditions.append("sc.category = %s")
            args.append(category)
        if environment:
            conditions.append("sc.environment = %s")
            args.append(Environment(environment).value)
        if date_from:
            conditions.append("ch.created_at >= %s")
            args.append(date_from)
        if date_to:
            conditions.append("ch.created_at <= %s")
            args.append(date_to)
        return conditions, args

    def _page(
        self,
        count_sql: str,
        select_sql: str,
        conditions: list[str],
        args: list[Any],
        page: int,
        page_size: int,
        sort_dir: str,
    ) -> Page[HistoryEntry]:
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        direction = "ASC" if sort_dir.lower() == "asc" else "DESC"
        page = max(page, 1)
        page_size = max(page_size, 1)

        with self.postgres.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(count_sql + where, tuple(args))
                total = int(cur.fetchone()["count"])
                cur.execute(
                    select_sql
                    + where
                    + f" ORDER BY ch.created_at {direction}, ch.id {direction} LIMIT %s OFFSET %s",
                    (*args, page_size, (page - 1) * page_size),
                )
                rows = cur.fetchall()

        return Page(
            items=[HistoryEntry.from_row(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )
