"""
configcenter service - configuration store and hot-reload coordinator.

Owns the configuration tables, keeps the Redis snapshot cache fresh, and
consumes change events from Redis Streams to drive hot reloads of the
handlers registered in this process.
"""

import asyncio
import contextlib
import signal
from functools import partial

from configcenter.cache.config_cache import ConfigCache, NullConfigCache, RedisConfigCache
from configcenter.config.settings import Settings
from configcenter.database.postgres import PostgresClient
from configcenter.database.schema import ensure_schema
from configcenter.events.bus import RedisEventBus
from configcenter.events.client import RedisClient
from configcenter.events.subscriber import EventSubscriber
from configcenter.handlers.event_handler import EventHandler
from configcenter.logger.logger import get_logger, init_logger
from configcenter.logger.postgres_writer import PostgresWriter
from configcenter.logger.types import Category, category, param
from configcenter.repository.config_repository import ConfigRepository
from configcenter.repository.history_repository import HistoryRepository
from configcenter.repository.metadata_repository import MetadataRepository
from configcenter.services.config_service import ConfigService
from configcenter.services.hot_reload import HotReloadCoordinator
from configcenter.services.merge_resolver import MergeResolver


async def shutdown(
    coordinator: HotReloadCoordinator,
    subscriber: EventSubscriber,
    redis_client: RedisClient,
    postgres_client: PostgresClient,
    log_writer: PostgresWriter,
) -> None:
    """Graceful shutdown."""
    logger = get_logger()
    logger.info("Shutting down configcenter...")

    # Stop reading events before tearing down the coordinator they feed
    await subscriber.stop()
    await coordinator.shutdown()

    await redis_client.close()
    await postgres_client.close()

    # Flush remaining log records last
    await log_writer.close()

    logger.info("Shutdown complete")


async def main() -> None:
    """Main entry point."""
    settings = Settings()

    postgres_client = PostgresClient(settings.postgres)
    await postgres_client.connect()
    ensure_schema(postgres_client)

    log_writer = PostgresWriter(
        dsn=settings.postgres.dsn,
        batch_size=100,
        flush_interval=5.0,
    )
    await log_writer.connect()

    init_logger(
        service_name=settings.service_name,
        environment=settings.environment,
        writer=log_writer,
        level=settings.log_level,
    )
    logger = get_logger()

    logger.info(
        "Starting configcenter",
        param("environment", settings.environment),
        param("service_name", settings.service_name),
        param("version", settings.service_version),
    )
    logger.info("Connected to PostgreSQL", category(Category.DATABASE))

    redis_client = RedisClient(settings.redis)
    await redis_client.connect()
    logger.info(
        "Connected to messenger (Redis)",
        category(Category.MESSENGER),
        param("host", settings.redis.host),
        param("port", settings.redis.port),
    )

    cache: ConfigCache = (
        RedisConfigCache(redis_client, ttl_s=settings.cache.ttl_s)
        if settings.cache.enabled
        else NullConfigCache()
    )
    bus = RedisEventBus(redis_client, source=settings.service_name)

    metadata_repository = MetadataRepository(postgres_client)
    config_service = ConfigService(
        config_repository=ConfigRepository(postgres_client),
        metadata_repository=metadata_repository,
        history_repository=HistoryRepository(postgres_client),
        cache=cache,
        bus=bus,
        audit_log=settings.options.audit_log,
        encryption=settings.options.encryption,
        cache_ttl_s=settings.cache.ttl_s,
        default_environment=settings.options.default_environment,
    )
    resolver = MergeResolver(
        config_service,
        metadata_repository,
        cache=cache,
        cache_ttl_s=settings.cache.ttl_s,
    )

    hot_reload = settings.hot_reload
    coordinator = HotReloadCoordinator(
        config_service,
        resolver=resolver,
        bus=bus,
        enabled=hot_reload.enabled,
        debounce_ms=hot_reload.debounce_ms,
        max_retries=hot_reload.max_retries,
        retry_delay_ms=hot_reload.retry_delay_ms,
        health_check=hot_reload.health_check,
        health_interval_ms=hot_reload.health_interval_ms,
        use_merged_values=hot_reload.use_merged_values,
    )
    coordinator.start()

    event_handler = EventHandler(coordinator)
    subscriber = EventSubscriber(
        redis_client=redis_client,
        consumer_group=settings.redis.consumer_group,
        streams=settings.redis.subscribe_streams,
    )

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        logger.info("Received signal", param("signal", sig))
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, partial(signal_handler, sig))

    try:
        logger.info(
            "Starting event consumer",
            category(Category.MESSENGER),
            param("consumer_group", settings.redis.consumer_group),
            param("streams", settings.redis.subscribe_streams),
        )

        consumer_task = asyncio.create_task(subscriber.consume(event_handler.handle))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        _, pending = await asyncio.wait(
            [consumer_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except Exception as e:
        logger.error("Fatal error in event consumer", e)
    finally:
        await shutdown(coordinator, subscriber, redis_client, postgres_client, log_writer)


if __name__ == "__main__":
    asyncio.run(main())
