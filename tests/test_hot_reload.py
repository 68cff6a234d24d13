"""
HotReloadCoordinator: debounce, per-key mutual exclusion, dispatch order,
handler isolation, retry accounting, forced reloads, health and shutdown.

The ``coordinator`` fixture uses a 50ms debounce and 3 attempts 10ms apart.
"""

import asyncio

import pytest

from configcenter.domain.config import FEATURE_TOGGLE_CATEGORY, Environment, ValueType
from configcenter.domain.errors import StoreUnavailableError
from configcenter.domain.events import ConfigUpdated, change_event_from_payload
from configcenter.services.hot_reload import (
    HEALTH_CHECK,
    RELOAD_COMPLETED,
    RELOAD_ERROR,
    HealthStatus,
    HotReloadCoordinator,
    ReloadHandlerRegistration,
    ReloadPhase,
    ReloadStats,
    classify,
)

SETTLE = 0.2


def change(category: str = "smtp", key: str = "host", environment=Environment.DEVELOPMENT):
    return ConfigUpdated(category=category, key=key, environment=environment, new_value="x")


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[dict, object]] = []

    async def __call__(self, values, event) -> None:
        self.calls.append((values, event))


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_reload(self, coordinator):
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        for _ in range(5):
            coordinator.handle_change_event(change())
            await asyncio.sleep(0.01)

        assert coordinator.key_state("smtp", Environment.DEVELOPMENT).phase is ReloadPhase.DEBOUNCING
        await asyncio.sleep(SETTLE)

        assert len(recorder.calls) == 1
        assert coordinator.key_state("smtp", Environment.DEVELOPMENT).phase is ReloadPhase.IDLE

    @pytest.mark.asyncio
    async def test_keys_are_debounced_independently(self, coordinator):
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        coordinator.handle_change_event(change(environment=Environment.DEVELOPMENT))
        coordinator.handle_change_event(change(environment=Environment.STAGING))
        await asyncio.sleep(SETTLE)

        assert sorted(e.environment.value for _, e in recorder.calls) == ["development", "staging"]

    @pytest.mark.asyncio
    async def test_disabled_coordinator_ignores_events(self, service):
        coordinator = HotReloadCoordinator(service, debounce_ms=10, enabled=False, use_merged_values=False)
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        coordinator.handle_change_event(change())
        await asyncio.sleep(0.05)

        assert recorder.calls == []
        await coordinator.shutdown()


class TestMutualExclusion:
    @pytest.mark.asyncio
    async def test_trigger_during_reload_does_not_start_second_dispatch(self, coordinator):
        release = asyncio.Event()
        started = []
        active = 0
        max_active = 0

        async def slow(values, event):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            started.append(event)
            await release.wait()
            active -= 1

        coordinator.register_handler(ReloadHandlerRegistration("slow", ["smtp"], slow))

        coordinator.handle_change_event(change())
        await asyncio.sleep(0.1)
        state = coordinator.key_state("smtp", Environment.DEVELOPMENT)
        assert state.in_flight is True
        assert state.phase is ReloadPhase.RELOADING

        coordinator.handle_change_event(change(key="port"))
        assert state.pending is True
        await asyncio.sleep(0.1)

        assert len(started) == 1
        assert state.pending is False

        release.set()
        await asyncio.sleep(0.05)
        assert max_active == 1
        assert state.in_flight is False

    @pytest.mark.asyncio
    async def test_forced_reload_waits_for_in_flight_reload(self, coordinator):
        release = asyncio.Event()
        started = []
        active = 0
        max_active = 0

        async def slow(values, event):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            started.append(event.key)
            await release.wait()
            active -= 1

        coordinator.register_handler(ReloadHandlerRegistration("slow", ["smtp"], slow))

        coordinator.handle_change_event(change())
        await asyncio.sleep(0.1)
        assert coordinator.key_state("smtp", Environment.DEVELOPMENT).in_flight is True

        forced = asyncio.create_task(coordinator.force_reload("smtp"))
        await asyncio.sleep(0.05)
        assert started == ["host"]

        release.set()
        completed = await asyncio.wait_for(forced, 1)

        assert started == ["host", "*"]
        assert max_active == 1
        assert completed.success_count == 1
        assert coordinator.key_state("smtp", Environment.DEVELOPMENT).in_flight is False


class TestDispatch:
    @pytest.mark.asyncio
    async def test_priority_order_with_registration_tiebreak(self, coordinator):
        order = []

        def make(name):
            async def handler(values, event):
                order.append(name)

            return handler

        coordinator.register_handler(ReloadHandlerRegistration("late", ["smtp"], make("late"), priority=200))
        coordinator.register_handler(ReloadHandlerRegistration("first", ["smtp"], make("first"), priority=10))
        coordinator.register_handler(ReloadHandlerRegistration("tie_a", ["smtp"], make("tie_a")))
        coordinator.register_handler(ReloadHandlerRegistration("tie_b", ["smtp"], make("tie_b")))

        await coordinator.force_reload("smtp")

        assert order == ["first", "tie_a", "tie_b", "late"]

    @pytest.mark.asyncio
    async def test_filters_by_category_and_environment(self, coordinator):
        everywhere = Recorder()
        prod_only = Recorder()
        other = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("all", ["smtp"], everywhere))
        coordinator.register_handler(
            ReloadHandlerRegistration("prod", ["smtp"], prod_only, environments=[Environment.PRODUCTION])
        )
        coordinator.register_handler(ReloadHandlerRegistration("sms", ["sms"], other))

        await coordinator.force_reload("smtp", Environment.DEVELOPMENT)

        assert len(everywhere.calls) == 1
        assert prod_only.calls == []
        assert other.calls == []

    @pytest.mark.asyncio
    async def test_handlers_receive_store_values(self, service, coordinator):
        await service.create("smtp", "port", "587", ValueType.NUMBER)
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        await coordinator.force_reload("smtp")

        assert recorder.calls[0][0] == {"port": 587}

    @pytest.mark.asyncio
    async def test_sync_handlers_are_supported(self, coordinator):
        seen = []
        coordinator.register_handler(
            ReloadHandlerRegistration("sync", ["smtp"], lambda values, event: seen.append(event.key))
        )

        await coordinator.force_reload("smtp")

        assert seen == ["*"]

    @pytest.mark.asyncio
    async def test_merged_values_when_resolver_given(self, service, resolver):
        coordinator = HotReloadCoordinator(service, resolver=resolver, health_check=False)
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        await coordinator.force_reload("smtp")

        assert recorder.calls[0][0]["host"] == "localhost"
        await coordinator.shutdown()


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, coordinator, bus):
        attempts = []
        healthy = Recorder()

        async def broken(values, event):
            attempts.append(1)
            raise RuntimeError("smtp relay refused")

        coordinator.register_handler(ReloadHandlerRegistration("broken", ["smtp"], broken, priority=1))
        coordinator.register_handler(ReloadHandlerRegistration("healthy", ["smtp"], healthy, priority=2))

        completed = await coordinator.force_reload("smtp")

        assert len(attempts) == 3
        assert len(healthy.calls) == 1
        assert (completed.success_count, completed.error_count) == (1, 1)
        assert completed.errors == ["broken: smtp relay refused"]

        stats = coordinator.get_reload_stats()
        assert (stats["broken"].error_count, stats["broken"].success_count) == (1, 0)
        assert stats["broken"].last_error == "smtp relay refused"
        assert (stats["healthy"].success_count, stats["healthy"].error_count) == (1, 0)
        assert coordinator.key_state("smtp", Environment.DEVELOPMENT).phase is ReloadPhase.IDLE_WITH_ERROR

        assert bus.topics() == ["reload.triggered", "reload.completed", "reload.smtp.completed"]
        assert bus.published[1][1]["error_count"] == 1

    @pytest.mark.asyncio
    async def test_success_on_last_attempt_counts_once(self, coordinator):
        attempts = []

        async def flaky(values, event):
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("transient")

        coordinator.register_handler(ReloadHandlerRegistration("flaky", ["smtp"], flaky))

        await coordinator.force_reload("smtp")

        stats = coordinator.get_reload_stats()["flaky"]
        assert len(attempts) == 3
        assert (stats.success_count, stats.error_count) == (1, 0)
        assert stats.last_reload_at is not None

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, coordinator):
        async def hangs(values, event):
            await asyncio.sleep(1)

        coordinator.register_handler(ReloadHandlerRegistration("hangs", ["smtp"], hangs, timeout_ms=20))

        completed = await coordinator.force_reload("smtp")

        assert completed.error_count == 1
        assert "timeout" in coordinator.get_reload_stats()["hangs"].last_error

    @pytest.mark.asyncio
    async def test_store_failure_propagates_to_forced_reload(self, coordinator, config_repository, bus):
        errors = []
        coordinator.on(RELOAD_ERROR, errors.append)
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))
        config_repository.fail_reads = StoreUnavailableError("PostgreSQL unavailable")

        with pytest.raises(StoreUnavailableError):
            await coordinator.force_reload("smtp")

        assert recorder.calls == []
        assert errors[0]["error"] == "PostgreSQL unavailable"
        assert "reload.failed" in bus.topics()
        assert coordinator.key_state("smtp", Environment.DEVELOPMENT).in_flight is False


class TestForceReload:
    @pytest.mark.asyncio
    async def test_synthesizes_wildcard_update(self, coordinator):
        recorder = Recorder()
        completions = []
        coordinator.on(RELOAD_COMPLETED, completions.append)
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        completed = await coordinator.force_reload("smtp", Environment.STAGING, actor="ops")

        event = recorder.calls[0][1]
        assert isinstance(event, ConfigUpdated)
        assert (event.key, event.reason, event.actor) == ("*", "Force reload", "ops")
        assert event.environment is Environment.STAGING
        assert completed.requested_by == "ops"
        assert completions[0]["success_count"] == 1

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self, coordinator):
        def bad_listener(payload):
            raise RuntimeError("observer bug")

        coordinator.on(RELOAD_COMPLETED, bad_listener)
        completed = await coordinator.force_reload("smtp")
        assert completed.error_count == 0

        coordinator.off(RELOAD_COMPLETED, bad_listener)


class TestHealth:
    @pytest.mark.parametrize(
        "success,errors,expected",
        [
            (0, 0, HealthStatus.HEALTHY),
            (5, 0, HealthStatus.HEALTHY),
            (3, 3, HealthStatus.DEGRADED),
            (1, 2, HealthStatus.UNHEALTHY),
        ],
    )
    def test_classify(self, success, errors, expected):
        assert classify(ReloadStats(success_count=success, error_count=errors)) is expected

    @pytest.mark.asyncio
    async def test_report_and_notification(self, coordinator):
        reports = []
        coordinator.on(HEALTH_CHECK, reports.append)

        async def broken(values, event):
            raise RuntimeError("down")

        coordinator.register_handler(ReloadHandlerRegistration("broken", ["smtp"], broken))
        coordinator.register_handler(ReloadHandlerRegistration("fine", ["smtp"], Recorder()))
        await coordinator.force_reload("smtp")

        report = coordinator.perform_health_check()

        assert report.status is HealthStatus.UNHEALTHY
        assert report.services["fine"].status is HealthStatus.HEALTHY
        assert reports[0]["services"] == {"broken": "unhealthy", "fine": "healthy"}

    @pytest.mark.asyncio
    async def test_periodic_check_runs_after_start(self, service):
        coordinator = HotReloadCoordinator(service, health_interval_ms=20, use_merged_values=False)
        reports = []
        coordinator.on(HEALTH_CHECK, reports.append)

        coordinator.start()
        await asyncio.sleep(0.1)
        await coordinator.shutdown()
        count = len(reports)
        await asyncio.sleep(0.05)

        assert count >= 2
        assert len(reports) == count

    @pytest.mark.asyncio
    async def test_reset_stats(self, coordinator):
        coordinator.register_handler(ReloadHandlerRegistration("fine", ["smtp"], Recorder()))
        await coordinator.force_reload("smtp")

        coordinator.reset_stats()

        assert coordinator.get_reload_stats()["fine"].success_count == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_reloads(self, service):
        coordinator = HotReloadCoordinator(service, debounce_ms=50, use_merged_values=False)
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        coordinator.handle_change_event(change())
        await coordinator.shutdown()
        await asyncio.sleep(0.1)

        assert recorder.calls == []
        assert coordinator.get_reload_stats() == {}

    @pytest.mark.asyncio
    async def test_unregister(self, coordinator):
        recorder = Recorder()
        coordinator.register_handler(ReloadHandlerRegistration("mailer", ["smtp"], recorder))

        assert coordinator.unregister_handler("mailer") is True
        assert coordinator.unregister_handler("mailer") is False
        await coordinator.force_reload("smtp")
        assert recorder.calls == []


class TestFeatureToggleScenario:
    @pytest.mark.asyncio
    async def test_toggle_change_reaches_handler_once(self, service, coordinator, bus):
        """A burst of toggle writes reaches the consumer as one reload with the final state."""
        bus.subscribe(
            "config.changed",
            lambda payload: coordinator.handle_change_event(change_event_from_payload(payload)),
        )
        recorder = Recorder()
        coordinator.register_handler(
            ReloadHandlerRegistration("web", [FEATURE_TOGGLE_CATEGORY], recorder)
        )

        await service.set_feature_toggle("new_checkout", True)
        await service.bulk_update_feature_toggles({"new_checkout": False, "dark_mode": True})
        await asyncio.sleep(SETTLE)

        assert len(recorder.calls) == 1
        values, event = recorder.calls[0]
        assert values == {"new_checkout": False, "dark_mode": True}
        assert event.category == FEATURE_TOGGLE_CATEGORY
