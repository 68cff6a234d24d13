"""
SQL repositories against a mocked psycopg2 pool.

The connection and cursor are MagicMocks; assertions target the
transaction behaviour (commit/rollback) and the statements issued.
"""

from datetime import date
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2.errors import UniqueViolation

from configcenter.database.postgres import PostgresClient, PostgresConfig
from configcenter.domain.config import (
    BulkUpdateItem,
    ConfigMetadata,
    Environment,
    SearchParams,
)
from configcenter.domain.errors import (
    DuplicateKeyError,
    NotFoundError,
    StoreUnavailableError,
    TargetNotEmptyError,
)
from configcenter.repository.config_repository import ConfigRepository
from configcenter.repository.history_repository import HistoryRepository
from configcenter.repository.metadata_repository import MetadataRepository


def entry_row(id: int = 1, key: str = "host", value: str = "mail") -> dict:
    return {
        "id": id,
        "category": "smtp",
        "config_key": key,
        "config_value": value,
        "value_type": "string",
        "is_encrypted": False,
        "is_active": True,
        "environment": "development",
        "updated_by": "alice",
    }


def metadata_row(category: str = "smtp", key: str = "host", id: int = 1) -> dict:
    return {
        "id": id,
        "category": category,
        "config_key": key,
        "display_name": key.title(),
        "input_type": "text",
        "validation_rules": {"minLength": 1},
        "sort_order": 0,
    }


@pytest.fixture
def conn() -> MagicMock:
    return MagicMock()


@pytest.fixture
def cursor(conn: MagicMock) -> MagicMock:
    cur = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    return cur


@pytest.fixture
def postgres(conn: MagicMock) -> PostgresClient:
    client = PostgresClient(PostgresConfig(host="db", password="secret"))
    client.pool = MagicMock()
    client.pool.getconn.return_value = conn
    return client


class TestTransaction:
    """PostgresClient.transaction()"""

    def test_commits_and_returns_connection(self, postgres, conn):
        with postgres.transaction() as c:
            assert c is conn

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        postgres.pool.putconn.assert_called_once_with(conn)

    def test_connection_failure_becomes_store_unavailable(self, postgres, conn):
        with pytest.raises(StoreUnavailableError):
            with postgres.transaction():
                raise psycopg2.OperationalError("server closed the connection")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        postgres.pool.putconn.assert_called_once_with(conn)

    def test_other_errors_propagate_after_rollback(self, postgres, conn):
        with pytest.raises(KeyError):
            with postgres.transaction():
                raise KeyError("boom")

        conn.rollback.assert_called_once()

    def test_requires_connect(self):
        client = PostgresClient(PostgresConfig(password="x"))
        with pytest.raises(RuntimeError):
            client.get_connection()


class TestConfigRepository:
    def test_create_maps_unique_violation(self, postgres, cursor):
        cursor.execute.side_effect = UniqueViolation("duplicate key")
        repo = ConfigRepository(postgres)

        with pytest.raises(DuplicateKeyError) as exc:
            repo.create("smtp", "host", "mail", environment=Environment.PRODUCTION)

        assert exc.value.environment == "production"

    def test_find_by_category_excludes_inactive_by_default(self, postgres, cursor):
        cursor.fetchall.return_value = [entry_row()]
        repo = ConfigRepository(postgres)

        entries = repo.find_by_category("smtp")

        query, args = cursor.execute.call_args.args
        assert "is_active = TRUE" in query
        assert "ORDER BY config_key" in query
        assert args == ("smtp", "development")
        assert entries[0].key == "host"

    def test_bulk_update_missing_row_rolls_back(self, postgres, conn, cursor):
        cursor.fetchone.side_effect = [entry_row(id=1), None]
        repo = ConfigRepository(postgres)

        with pytest.raises(NotFoundError):
            repo.bulk_update(
                [BulkUpdateItem(id=1, value="a"), BulkUpdateItem(id=99, value="b")],
                updated_by="alice",
            )

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_bulk_update_single_transaction(self, postgres, conn, cursor):
        cursor.fetchone.side_effect = [entry_row(id=1), entry_row(id=2, key="port", value="25")]
        repo = ConfigRepository(postgres)

        updated = repo.bulk_update(
            [BulkUpdateItem(id=1, value="a"), BulkUpdateItem(id=2, is_active=False)]
        )

        assert [e.id for e in updated] == [1, 2]
        assert postgres.pool.getconn.call_count == 1
        conn.commit.assert_called_once()

    def test_search_filters_and_unknown_sort_field(self, postgres, cursor):
        cursor.fetchone.return_value = {"count": 1}
        cursor.fetchall.return_value = [dict(entry_row(), meta_display_name=None)]
        repo = ConfigRepository(postgres)

        items, total = repo.search(
            SearchParams(category="smtp", text="Host", sort_field="nope", page=2, page_size=10)
        )

        count_query, count_args = cursor.execute.call_args_list[0].args
        page_query, page_args = cursor.execute.call_args_list[1].args
        assert "cm.display_name ILIKE" in count_query
        assert count_args == ("smtp", "%Host%", "%Host%", "%Host%")
        assert "ORDER BY sc.config_key ASC" in page_query
        assert page_args[-2:] == (10, 10)
        assert total == 1
        assert items[0].group_name == "general"

    def test_delete_reports_rowcount(self, postgres, cursor):
        cursor.rowcount = 0
        assert ConfigRepository(postgres).delete(5) is False


class TestMetadataRepository:
    def test_clone_refuses_non_empty_target(self, postgres, conn, cursor):
        cursor.fetchall.return_value = [metadata_row()]
        cursor.fetchone.return_value = (1,)
        repo = MetadataRepository(postgres)

        with pytest.raises(TargetNotEmptyError):
            repo.clone_to_category("smtp", "smtp_backup")

        conn.rollback.assert_called_once()

    def test_clone_with_overwrite_deletes_target_first(self, postgres, conn, cursor):
        cursor.fetchall.return_value = [metadata_row(), metadata_row(key="port", id=2)]
        cursor.fetchone.side_effect = [
            metadata_row(category="smtp_backup", id=10),
            metadata_row(category="smtp_backup", key="port", id=11),
        ]
        repo = MetadataRepository(postgres)

        cloned = repo.clone_to_category("smtp", "smtp_backup", overwrite=True)

        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert statements[1].startswith("DELETE FROM configuration_metadata")
        assert all("INSERT INTO configuration_metadata" in s for s in statements[2:])
        assert [m.category for m in cloned] == ["smtp_backup", "smtp_backup"]
        conn.commit.assert_called_once()

    def test_clone_of_empty_source(self, postgres, cursor):
        cursor.fetchall.return_value = []
        assert MetadataRepository(postgres).clone_to_category("none", "target") == []
        assert cursor.execute.call_count == 1

    def test_grouped_uses_general_for_ungrouped(self, postgres, cursor):
        cursor.fetchall.return_value = [
            dict(metadata_row(), group_name="server"),
            dict(metadata_row(key="from", id=2), group_name=None),
        ]
        grouped = MetadataRepository(postgres).find_by_category_grouped("smtp")
        assert set(grouped) == {"server", "general"}

    def test_create_maps_unique_violation(self, postgres, cursor):
        cursor.execute.side_effect = UniqueViolation("duplicate key")
        with pytest.raises(DuplicateKeyError):
            MetadataRepository(postgres).create(
                ConfigMetadata(category="smtp", key="host", display_name="Host")
            )


class TestHistoryRepository:
    def test_find_by_config_is_newest_first(self, postgres, cursor):
        cursor.fetchone.return_value = {"count": 0}
        cursor.fetchall.return_value = []

        page = HistoryRepository(postgres).find_by_config(7)

        query, args = cursor.execute.call_args_list[1].args
        assert "ORDER BY ch.created_at DESC" in query
        assert args == (7, 50, 0)
        assert page.total == 0

    def test_change_statistics(self, postgres, cursor):
        cursor.fetchone.return_value = {"count": 3}
        cursor.fetchall.side_effect = [
            [{"category": "smtp", "count": 3}],
            [{"changed_by": "alice", "count": 2}, {"changed_by": "bob", "count": 1}],
            [{"day": date(2026, 10, 1), "count": 3}],
        ]

        stats = HistoryRepository(postgres).change_statistics(category="smtp")

        assert stats.total_changes == 3
        assert stats.by_category == {"smtp": 3}
        assert stats.by_actor == {"alice": 2, "bob": 1}
        assert stats.by_day == {"2026-10-01": 3}
        day_query = cursor.execute.call_args_list[3].args[0]
        assert "INTERVAL '30 days'" in day_query

    def test_purge_orphaned_returns_rowcount(self, postgres, cursor):
        cursor.rowcount = 4
        assert HistoryRepository(postgres).purge_orphaned() == 4

    def test_purge_older_than_scoped_to_category(self, postgres, cursor):
        cursor.rowcount = 2
        removed = HistoryRepository(postgres).purge_older_than(90, category="smtp")

        query, args = cursor.execute.call_args.args
        assert "category = %s" in query
        assert args == (90, "smtp")
        assert removed == 2
