"""Per-(category, environment) snapshot cache for resolved store values."""

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from redis.exceptions import RedisError

from configcenter.domain.config import Environment
from configcenter.domain.errors import CacheUnavailableError
from configcenter.events.client import RedisClient
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

DEFAULT_TTL_S = 300


def cache_key(category: str, environment: Environment | str) -> str:
    return f"config:{category}:{Environment(environment).value}"


@dataclass
class CacheSnapshot:
    """Values of one (category, environment) and when they were stored."""

    values: dict[str, Any]
    stored_at: datetime | None = None


class ConfigCache(Protocol):
    """Cache capability used by the service and the merge resolver."""

    async def get(self, category: str, environment: Environment) -> CacheSnapshot | None: ...

    async def set_with_ttl(
        self,
        category: str,
        environment: Environment,
        values: dict[str, Any],
        ttl_s: int | None = None,
    ) -> None: ...

    async def invalidate(self, category: str, environment: Environment) -> None: ...


class NullConfigCache:
    """Cache that never holds anything; every read is a miss."""

    async def get(self, category: str, environment: Environment) -> CacheSnapshot | None:
        return None

    async def set_with_ttl(
        self,
        category: str,
        environment: Environment,
        values: dict[str, Any],
        ttl_s: int | None = None,
    ) -> None:
        return None

    async def invalidate(self, category: str, environment: Environment) -> None:
        return None


class RedisConfigCache:
    """
    Snapshot cache stored in Redis as JSON.

    Each snapshot is ``{"values": {...}, "stored_at": <epoch seconds>}`` under
    ``config:<category>:<environment>`` and expires after the TTL. Redis
    failures are raised as ``CacheUnavailableError`` so callers can degrade
    to the database.
    """

    def __init__(self, redis_client: RedisClient, ttl_s: int = DEFAULT_TTL_S) -> None:
        self.redis_client = redis_client
        self.ttl_s = ttl_s
        self.logger = get_logger().with_category(Category.CACHE)

    async def get(self, category: str, environment: Environment) -> CacheSnapshot | None:
        key = cache_key(category, environment)
        try:
            raw = await self.redis_client.get_redis().get(key)
        except (RedisError, RuntimeError) as e:
            raise CacheUnavailableError(f"Cache read failed for {key}: {e}") from e

        if raw is None:
            return None
        try:
            snapshot = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warn("Discarding corrupt cache snapshot", param("key", key))
            return None

        values = snapshot.get("values") if isinstance(snapshot, dict) else None
        if not isinstance(values, dict):
            return None
        stored_at = snapshot.get("stored_at")
        return CacheSnapshot(
            values=values,
            stored_at=(
                datetime.fromtimestamp(stored_at, tz=timezone.utc)
                if isinstance(stored_at, (int, float))
                else None
            ),
        )

    async def set_with_ttl(
        self,
        category: str,
        environment: Environment,
        values: dict[str, Any],
        ttl_s: int | None = None,
    ) -> None:
        key = cache_key(category, environment)
        snapshot = json.dumps({"values": values, "stored_at": time.time()}, default=str)
        try:
            await self.redis_client.get_redis().set(key, snapshot, ex=ttl_s or self.ttl_s)
        except (RedisError, RuntimeError) as e:
            raise CacheUnavailableError(f"Cache write failed for {key}: {e}") from e

        self.logger.debug("Cache snapshot stored", param("key", key), param("keys", len(values)))

    async def invalidate(self, category: str, environment: Environment) -> None:
        key = cache_key(category, environment)
        try:
            await self.redis_client.get_redis().delete(key)
        except (RedisError, RuntimeError) as e:
            raise CacheUnavailableError(f"Cache invalidate failed for {key}: {e}") from e
