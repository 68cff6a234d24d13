"""
Shared fixtures: a ConfigService over in-memory repositories, a merge
resolver and a coordinator with short timings.
"""

import pytest
import pytest_asyncio

from configcenter.domain.config import (
    FEATURE_TOGGLE_CATEGORY,
    ConfigMetadata,
    InputType,
    ValidationRules,
)
from configcenter.services.config_service import ConfigService
from configcenter.services.hot_reload import HotReloadCoordinator
from configcenter.services.merge_resolver import MergeResolver
from tests.fakes import (
    FakeConfigRepository,
    FakeHistoryRepository,
    FakeMetadataRepository,
    InMemoryCache,
    RecordingBus,
)


@pytest.fixture
def metadata_repository() -> FakeMetadataRepository:
    return FakeMetadataRepository(
        [
            ConfigMetadata(
                category="smtp",
                key="host",
                display_name="SMTP host",
                default_value="localhost",
                group_name="server",
                sort_order=1,
            ),
            ConfigMetadata(
                category="smtp",
                key="port",
                display_name="SMTP port",
                input_type=InputType.NUMBER,
                validation_rules=ValidationRules(min=1, max=65535),
                default_value="25",
                group_name="server",
                sort_order=2,
            ),
            ConfigMetadata(
                category="smtp",
                key="secure",
                display_name="Use TLS",
                input_type=InputType.CHECKBOX,
                default_value="false",
                sort_order=3,
            ),
            ConfigMetadata(
                category=FEATURE_TOGGLE_CATEGORY,
                key="beta_dashboard",
                display_name="Beta dashboard",
                input_type=InputType.CHECKBOX,
                default_value="true",
            ),
        ]
    )


@pytest.fixture
def config_repository(metadata_repository: FakeMetadataRepository) -> FakeConfigRepository:
    return FakeConfigRepository(metadata_repository)


@pytest.fixture
def history_repository() -> FakeHistoryRepository:
    return FakeHistoryRepository()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def service(
    config_repository: FakeConfigRepository,
    metadata_repository: FakeMetadataRepository,
    history_repository: FakeHistoryRepository,
    cache: InMemoryCache,
    bus: RecordingBus,
) -> ConfigService:
    return ConfigService(
        config_repository=config_repository,  # type: ignore[arg-type]
        metadata_repository=metadata_repository,  # type: ignore[arg-type]
        history_repository=history_repository,  # type: ignore[arg-type]
        cache=cache,
        bus=bus,
    )


@pytest.fixture
def resolver(
    service: ConfigService,
    metadata_repository: FakeMetadataRepository,
    cache: InMemoryCache,
) -> MergeResolver:
    return MergeResolver(service, metadata_repository, cache=cache, environ={})  # type: ignore[arg-type]


@pytest_asyncio.fixture
async def coordinator(service: ConfigService, bus: RecordingBus):
    """Coordinator reading store values, 50ms debounce, 3 attempts 10ms apart."""
    coordinator = HotReloadCoordinator(
        service,
        bus=bus,
        debounce_ms=50,
        max_retries=3,
        retry_delay_ms=10,
        health_check=False,
        use_merged_values=False,
    )
    yield coordinator
    await coordinator.shutdown()
