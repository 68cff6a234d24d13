"""Structured logger records and the batched PostgreSQL writer."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from configcenter.logger import Category, Level, LogEntry, Logger, PostgresWriter, param
from configcenter.logger.types import category, duration_ms


def entry(message: str = "hello") -> LogEntry:
    return LogEntry(
        timestamp=datetime.now(timezone.utc),
        service_name="configcenter",
        instance_id="host-1",
        environment="test",
        level=Level.INFO,
        message=message,
    )


def stderr_records(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().err.splitlines() if line]


class TestLogger:
    def test_fields_category_and_duration(self, capsys):
        logger = Logger("configcenter", "test").with_category(Category.STORE)

        logger.info("Configuration created", param("key", "host"), duration_ms(12.7))

        [record] = stderr_records(capsys)
        assert record["category"] == "store"
        assert record["context"] == {"key": "host"}
        assert record["duration_ms"] == 12

    def test_category_override_per_record(self, capsys):
        logger = Logger("configcenter", "test").with_category(Category.STORE)

        logger.warn("Cache write failed", category(Category.CACHE))

        assert stderr_records(capsys)[0]["category"] == "cache"

    def test_min_level_drops_lower_records(self, capsys):
        logger = Logger("configcenter", "test", min_level=Level.WARN)

        logger.debug("noise")
        logger.info("noise")
        logger.error("Reload failed", RuntimeError("boom"))

        [record] = stderr_records(capsys)
        assert record["level"] == "error"
        assert record["error"] == "boom"

    def test_with_fields_does_not_leak_into_parent(self, capsys):
        parent = Logger("configcenter", "test")
        child = parent.with_fields(param("request", "r-1"))

        child.info("child")
        parent.info("parent")

        child_record, parent_record = stderr_records(capsys)
        assert child_record["context"] == {"request": "r-1"}
        assert "context" not in parent_record


class TestPostgresWriter:
    @pytest.mark.asyncio
    async def test_flush_inserts_buffer_in_one_statement(self):
        writer = PostgresWriter("postgresql://test", batch_size=10)
        writer._conn = MagicMock()

        await writer.write(entry("a"))
        await writer.write(entry("b"))
        with patch("psycopg2.extras.execute_values") as execute_values:
            await writer.flush()

        _, query, rows = execute_values.call_args.args
        assert "INSERT INTO service_logs" in query
        assert [row[9] for row in rows] == ["a", "b"]
        writer._conn.commit.assert_called_once()
        assert writer.buffer == []

    @pytest.mark.asyncio
    async def test_insert_failure_falls_back_to_stderr(self, capsys):
        writer = PostgresWriter("postgresql://test")
        writer._conn = MagicMock()
        await writer.write(entry("kept"))

        with patch("psycopg2.extras.execute_values", side_effect=psycopg2.OperationalError("gone")):
            await writer.flush()

        writer._conn.rollback.assert_called_once()
        assert "kept" in capsys.readouterr().err
        assert writer.buffer == []

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self):
        writer = PostgresWriter("postgresql://test", batch_size=2)
        writer._conn = MagicMock()

        with patch("psycopg2.extras.execute_values") as execute_values:
            await writer.write(entry("a"))
            execute_values.assert_not_called()
            await writer.write(entry("b"))

        execute_values.assert_called_once()
