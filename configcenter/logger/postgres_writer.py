"""Batched PostgreSQL sink for log records."""

import asyncio
import contextlib
import json
import sys

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as Connection

from configcenter.logger.types import LogEntry

INSERT_LOGS_SQL = """
    INSERT INTO service_logs (
        timestamp, service_name, instance_id, environment,
        level, category, function_name, file_path, line_number,
        message, error_message, stack_trace, context,
        duration_ms, ingestion_time
    ) VALUES %s
"""


class PostgresWriter:
    """Buffers log records and flushes them with one multi-row INSERT."""

    def __init__(
        self,
        dsn: str,
        batch_size: int = 100,
        flush_interval: float = 5.0,
    ) -> None:
        """
        Initialize PostgresWriter.

        Args:
            dsn: PostgreSQL connection string
            batch_size: Buffer size that triggers an immediate flush
            flush_interval: Seconds between background flushes
        """
        self.dsn = dsn
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.buffer: list[LogEntry] = []
        self._lock = asyncio.Lock()
        self._conn: Connection | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._closed = False

    async def connect(self) -> None:
        """Open the connection and start the background flush loop."""
        try:
            self._conn = psycopg2.connect(self.dsn)
            self._conn.set_session(autocommit=False)
        except psycopg2.Error as e:
            print(f"[LOGGER ERROR] Failed to connect to PostgreSQL: {e}", file=sys.stderr)
            raise
        self._flush_task = asyncio.create_task(self._background_flush())

    async def write(self, entry: LogEntry) -> None:
        if self._closed:
            self._emit_stderr([entry])
            return

        async with self._lock:
            self.buffer.append(entry)
            if len(self.buffer) >= self.batch_size:
                await self._flush_locked()

    async def flush(self) -> None:
        async with self._lock:
            await self._flush_locked()

    async def _flush_locked(self) -> None:
        """Write the buffer; the caller holds the lock."""
        if not self.buffer:
            return
        if self._conn is None:
            self._emit_stderr(self.buffer)
            self.buffer.clear()
            return

        rows = [
            (
                entry.timestamp,
                entry.service_name,
                entry.instance_id,
                entry.environment,
                entry.level.value,
                entry.category.value if entry.category else None,
                entry.function_name,
                entry.file_path,
                entry.line_number,
                entry.message,
                entry.error_message,
                entry.stack_trace,
                json.dumps(entry.context, default=str) if entry.context is not None else None,
                entry.duration_ms,
                entry.ingestion_time,
            )
            for entry in self.buffer
        ]

        try:
            with self._conn.cursor() as cursor:
                psycopg2.extras.execute_values(
                    cursor, INSERT_LOGS_SQL, rows, page_size=self.batch_size
                )
            self._conn.commit()
        except psycopg2.Error as e:
            print(f"[LOGGER ERROR] Failed to insert logs: {e}", file=sys.stderr)
            self._conn.rollback()
            self._emit_stderr(self.buffer)
        self.buffer.clear()

    @staticmethod
    def _emit_stderr(entries: list[LogEntry]) -> None:
        for entry in entries:
            print(json.dumps(entry.to_dict(), default=str), file=sys.stderr)

    async def _background_flush(self) -> None:
        while not self._closed:
            try:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
            except asyncio.CancelledError:
                break

    async def close(self) -> None:
        """Stop the flush loop, flush what is left and close the connection."""
        self._closed = True

        if self._flush_task:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task

        await self.flush()

        if self._conn:
            self._conn.close()
            self._conn = None

