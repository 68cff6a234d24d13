"""PostgreSQL client for the configuration store."""

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2
from psycopg2.extensions import connection as Connection
from psycopg2.pool import PoolError, ThreadedConnectionPool

from configcenter.domain.errors import StoreUnavailableError
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param


class PostgresConfig:
    """PostgreSQL connection configuration."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        min_conn: int | None = None,
        max_conn: int | None = None,
    ) -> None:
        self.host = host or os.getenv("DB_HOST", "localhost")
        self.port = port or int(os.getenv("DB_PORT", "5432"))
        self.database = database or os.getenv("DB_NAME", "configcenter")
        self.user = user or os.getenv("DB_USER", "configcenter")
        self.password = password or self._read_password()
        self.min_conn = min_conn or int(os.getenv("DB_POOL_MIN", "2"))
        self.max_conn = max_conn or int(os.getenv("DB_POOL_MAX", "10"))

    @staticmethod
    def _read_password() -> str:
        """Read password from Docker secret or env."""
        secret_file = "/run/secrets/db_password"
        if os.path.exists(secret_file):
            with open(secret_file) as f:
                return f.read().strip()
        return os.getenv("DB_PASSWORD", "configcenter")

    @property
    def dsn(self) -> str:
        return (
            f"host={self.host} "
            f"port={self.port} "
            f"dbname={self.database} "
            f"user={self.user} "
            f"password={self.password}"
        )


class PostgresClient:
    """PostgreSQL client with connection pooling and a transaction helper."""

    def __init__(self, config: PostgresConfig | dict[str, Any] | None = None) -> None:
        """
        Initialize PostgreSQL client.

        Args:
            config: PostgresConfig, keyword dict for it, or None for env defaults
        """
        if isinstance(config, dict):
            self.config = PostgresConfig(**config)
        elif config is None:
            self.config = PostgresConfig()
        else:
            self.config = config

        self.pool: ThreadedConnectionPool | None = None
        self.logger = get_logger().with_category(Category.DATABASE)

    async def connect(self) -> None:
        """Create the connection pool."""
        try:
            self.pool = ThreadedConnectionPool(
                minconn=self.config.min_conn,
                maxconn=self.config.max_conn,
                dsn=self.config.dsn,
            )
        except psycopg2.Error as e:
            raise StoreUnavailableError(f"Failed to create connection pool: {e}") from e

    async def close(self) -> None:
        if self.pool:
            self.pool.closeall()
            self.pool = None

    def get_connection(self) -> Connection:
        """Borrow a connection from the pool."""
        if not self.pool:
            raise RuntimeError("Connection pool not initialized. Call connect() first.")
        try:
            return self.pool.getconn()  # type: ignore[no-any-return]
        except PoolError as e:
            raise StoreUnavailableError(f"Connection pool exhausted: {e}") from e

    def put_connection(self, conn: Connection) -> None:
        if self.pool:
            self.pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """
        Run a block inside one transaction.

        Commits when the block returns, rolls back when it raises. Connection
        level failures surface as ``StoreUnavailableError``; every other
        exception propagates unchanged after the rollback.
        """
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._safe_rollback(conn)
            self.logger.error("PostgreSQL unavailable", e, param("host", self.config.host))
            raise StoreUnavailableError(f"PostgreSQL unavailable: {e}") from e
        except BaseException:
            self._safe_rollback(conn)
            raise
        finally:
            self.put_connection(conn)

    def _safe_rollback(self, conn: Connection) -> None:
        try:
            conn.rollback()
        except psycopg2.Error as e:
            self.logger.warn("Rollback failed", param("error", str(e)))
