"""Structured logger used by every configcenter component."""

import asyncio
import inspect
import json
import os
import sys
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from configcenter.logger.postgres_writer import PostgresWriter
from configcenter.logger.types import Category, Field, Level, LogEntry

_LEVEL_ORDER = {level: index for index, level in enumerate(Level)}


class Logger:
    """Logger writing structured records to PostgreSQL, or to stderr as JSON lines."""

    def __init__(
        self,
        service_name: str,
        environment: str,
        writer: PostgresWriter | None = None,
        min_level: Level = Level.DEBUG,
    ) -> None:
        """
        Initialize Logger.

        Args:
            service_name: Service name stamped on every record
            environment: Deployment environment (development, production, ...)
            writer: Batched PostgreSQL writer; stderr is used when absent
            min_level: Records below this level are dropped
        """
        self.service_name = service_name
        self.environment = environment
        self.writer = writer
        self.min_level = min_level
        self.instance_id = self._get_instance_id()

        self._fields: dict[str, Any] = {}
        self._category: Category | None = None

    def trace(self, msg: str, *fields: Field) -> None:
        self._log(Level.TRACE, msg, None, *fields)

    def debug(self, msg: str, *fields: Field) -> None:
        self._log(Level.DEBUG, msg, None, *fields)

    def info(self, msg: str, *fields: Field) -> None:
        self._log(Level.INFO, msg, None, *fields)

    def warn(self, msg: str, *fields: Field) -> None:
        self._log(Level.WARN, msg, None, *fields)

    def error(self, msg: str, err: BaseException | None = None, *fields: Field) -> None:
        self._log(Level.ERROR, msg, err, *fields)

    def fatal(self, msg: str, err: BaseException | None = None, *fields: Field) -> None:
        """Log and exit the process."""
        self._log(Level.FATAL, msg, err, *fields)
        raise SystemExit(1)

    def _log(
        self,
        level: Level,
        msg: str,
        err: BaseException | None,
        *fields: Field,
    ) -> None:
        if _LEVEL_ORDER[level] < _LEVEL_ORDER[self.min_level]:
            return

        frame = inspect.currentframe()
        caller = frame.f_back.f_back if frame and frame.f_back else None

        context: dict[str, Any] = dict(self._fields)
        record_category = self._category
        for field in fields:
            if field.key == "_category":
                if isinstance(field.value, Category):
                    record_category = field.value
                continue
            context[field.key] = field.value

        duration = context.pop("duration_ms", None)

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            service_name=self.service_name,
            instance_id=self.instance_id,
            environment=self.environment,
            level=level,
            category=record_category,
            function_name=caller.f_code.co_name if caller else None,
            file_path=self._clean_file_path(caller.f_code.co_filename) if caller else None,
            line_number=caller.f_lineno if caller else None,
            message=msg,
            context=context or None,
            duration_ms=int(duration) if duration is not None else None,
        )

        if err is not None:
            entry.error_message = str(err) or type(err).__name__
            if level in (Level.ERROR, Level.FATAL, Level.PANIC):
                entry.stack_trace = "".join(
                    traceback.format_exception(type(err), err, err.__traceback__)
                )

        if self.writer is None:
            self._write_stderr(entry)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside the event loop the batch cannot be flushed asynchronously
            self._write_stderr(entry)
            return
        loop.create_task(self.writer.write(entry))

    @staticmethod
    def _write_stderr(entry: LogEntry) -> None:
        print(json.dumps(entry.to_dict(), default=str), file=sys.stderr)

    def with_category(self, category: Category) -> "Logger":
        """Return a child logger bound to ``category``."""
        child = self._copy()
        child._category = category
        return child

    def with_fields(self, *fields: Field) -> "Logger":
        """Return a child logger that adds ``fields`` to every record."""
        child = self._copy()
        for field in fields:
            child._fields[field.key] = field.value
        return child

    def _copy(self) -> "Logger":
        child = Logger(self.service_name, self.environment, self.writer, self.min_level)
        child.instance_id = self.instance_id
        child._fields = dict(self._fields)
        child._category = self._category
        return child

    @staticmethod
    def _get_instance_id() -> str:
        if hostname := os.getenv("HOSTNAME"):
            return hostname
        if container_id := os.getenv("CONTAINER_ID"):
            return container_id
        return str(uuid.uuid4())

    @staticmethod
    def _clean_file_path(file_path: str) -> str:
        path = Path(file_path)
        parts = path.parts
        if "configcenter" in parts:
            idx = parts.index("configcenter")
            return str(Path(*parts[idx:]))
        return path.name


_global_logger: Logger | None = None


def get_logger() -> Logger:
    """
    Return the process-wide logger.

    Falls back to a stderr logger when ``init_logger`` has not been called,
    so library code and tests can log without wiring a writer.
    """
    global _global_logger
    if _global_logger is None:
        _global_logger = Logger(
            service_name=os.getenv("SERVICE_NAME", "configcenter"),
            environment=os.getenv("ENVIRONMENT", "development"),
            min_level=_parse_level(os.getenv("LOG_LEVEL", "info")),
        )
    return _global_logger


def init_logger(
    service_name: str,
    environment: str,
    writer: PostgresWriter | None = None,
    level: str = "info",
) -> Logger:
    """
    Initialize the process-wide logger.

    Args:
        service_name: Service name
        environment: Deployment environment
        writer: PostgresWriter for persisted logs
        level: Minimum level name (trace, debug, info, ...)

    Returns:
        Logger instance
    """
    global _global_logger
    _global_logger = Logger(service_name, environment, writer, _parse_level(level))
    return _global_logger


def _parse_level(name: str) -> Level:
    try:
        return Level(name.lower())
    except ValueError:
        return Level.INFO
