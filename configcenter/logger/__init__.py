"""Structured logging for configcenter."""

from configcenter.logger.logger import Logger, get_logger, init_logger
from configcenter.logger.postgres_writer import PostgresWriter
from configcenter.logger.types import Category, Field, Level, LogEntry, param

__all__ = [
    "Logger",
    "get_logger",
    "init_logger",
    "PostgresWriter",
    "Category",
    "Level",
    "LogEntry",
    "Field",
    "param",
]
