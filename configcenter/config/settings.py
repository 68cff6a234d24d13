"""Settings module for the configcenter service."""

import os

from configcenter.database.postgres import PostgresConfig
from configcenter.domain.config import Environment
from configcenter.domain.events import TOPIC_CONFIG_CHANGED


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class RedisConfig:
    """Redis configuration (event bus and snapshot cache)."""

    def __init__(self) -> None:
        self.host = os.getenv("MESSENGER_HOST", "messenger")
        self.port = int(os.getenv("MESSENGER_PORT", "6379"))
        self.db = int(os.getenv("MESSENGER_DB", "0"))
        self.password = self._read_password()
        self.consumer_group = f"configcenter-{os.getenv('ENVIRONMENT', 'development')}"

        # Streams consumed by the hot-reload coordinator
        self.subscribe_streams: list[str] = [TOPIC_CONFIG_CHANGED]

    def _read_password(self) -> str | None:
        """Read Redis password from Docker secret or environment."""
        secret_path = "/run/secrets/redis_password"
        try:
            with open(secret_path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return os.getenv("MESSENGER_PASSWORD")


class CacheConfig:
    def __init__(self) -> None:
        self.enabled = _env_bool("CONFIG_CACHE_ENABLED", True)
        self.ttl_s = int(os.getenv("CONFIG_CACHE_TTL", "300"))


class HotReloadConfig:
    """Hot-reload coordinator tuning."""

    def __init__(self) -> None:
        self.enabled = _env_bool("HOT_RELOAD_ENABLED", True)
        self.debounce_ms = int(os.getenv("HOT_RELOAD_DEBOUNCE_MS", "1000"))
        self.max_retries = int(os.getenv("HOT_RELOAD_MAX_RETRIES", "3"))
        self.retry_delay_ms = int(os.getenv("HOT_RELOAD_RETRY_DELAY_MS", "1000"))
        self.health_check = _env_bool("HOT_RELOAD_HEALTH_CHECK", True)
        self.health_interval_ms = int(os.getenv("HOT_RELOAD_HEALTH_INTERVAL_MS", "60000"))
        self.use_merged_values = _env_bool("HOT_RELOAD_USE_MERGED", True)


class ServiceOptions:
    """Store behaviour switches."""

    def __init__(self) -> None:
        self.audit_log = _env_bool("CONFIG_AUDIT_LOG", True)
        self.encryption = _env_bool("CONFIG_ENCRYPTION", False)
        self.default_environment = Environment(
            os.getenv("CONFIG_DEFAULT_ENVIRONMENT", Environment.DEVELOPMENT.value)
        )


class Settings:
    """Application settings."""

    def __init__(self) -> None:
        # Service info
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.service_name = os.getenv("SERVICE_NAME", "configcenter")
        self.service_version = os.getenv("SERVICE_VERSION", "0.1.0")
        self.log_level = os.getenv("LOG_LEVEL", "info")

        self.postgres = PostgresConfig()
        self.redis = RedisConfig()
        self.cache = CacheConfig()
        self.hot_reload = HotReloadConfig()
        self.options = ServiceOptions()
