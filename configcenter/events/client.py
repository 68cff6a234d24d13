"""Shared asyncio Redis connection for the stream bus and the snapshot cache."""

import asyncio
from typing import TYPE_CHECKING

import redis.asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

if TYPE_CHECKING:
    from configcenter.config.settings import RedisConfig

MAX_BACKOFF_S = 30.0


class RedisClient:
    """One connection per process; the bus, subscriber and cache borrow it."""

    def __init__(self, config: "RedisConfig") -> None:
        self.config = config
        self.redis: Redis | None = None
        self.logger = get_logger().with_category(Category.MESSENGER)

    def _open(self) -> Redis:
        return redis_async.Redis(
            host=self.config.host,
            port=self.config.port,
            db=self.config.db,
            password=self.config.password,
            decode_responses=True,
            socket_keepalive=True,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )

    async def connect(self, max_retries: int = 10, initial_delay: float = 1.0) -> None:
        """
        PING until Redis answers, backing off exponentially between tries.

        Raises:
            ConnectionError: Redis still unreachable after ``max_retries`` tries
        """
        where = (param("host", self.config.host), param("port", self.config.port))
        delay = initial_delay
        failure: Exception | None = None

        for attempt in range(1, max_retries + 1):
            candidate = self._open()
            try:
                await candidate.ping()  # type: ignore[misc]
            except (RedisError, OSError) as e:
                failure = e
                await candidate.aclose()
                if attempt == max_retries:
                    break
                self.logger.warn(
                    "Redis not reachable yet",
                    *where,
                    param("attempt", attempt),
                    param("retry_in_s", delay),
                    param("error", str(e)),
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_S)
                continue

            self.redis = candidate
            self.logger.info("Redis connection ready", *where, param("attempt", attempt))
            return

        self.logger.error("Giving up on Redis", failure, *where, param("attempts", max_retries))
        raise ConnectionError(
            f"Redis {self.config.host}:{self.config.port} unreachable after {max_retries} attempts"
        )

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None

    def get_redis(self) -> Redis:
        if self.redis is None:
            raise RuntimeError("Redis is not connected; await RedisClient.connect() first")
        return self.redis
