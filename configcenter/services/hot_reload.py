"""
Hot-reload coordinator.

Debounces change events per (category, environment), then dispatches the
current values to every registered handler that matches, in priority order,
each call bounded by a timeout and retried a fixed number of times.

Per-key state is two independent flags: ``pending`` (a debounce timer is
armed) and ``in_flight`` (a reload is dispatching). A timer that fires while
the key is in flight is dropped; the running reload already re-read the
values it dispatches. A direct ``reload`` or ``force_reload`` made while the
key is in flight waits on the key's lock and runs afterwards, so dispatches
of one key never overlap.
"""

import asyncio
import contextlib
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from configcenter.domain.config import Environment
from configcenter.domain.errors import HandlerError
from configcenter.domain.events import (
    TOPIC_RELOAD_COMPLETED,
    TOPIC_RELOAD_FAILED,
    TOPIC_RELOAD_TRIGGERED,
    ChangeEvent,
    ConfigUpdated,
    ReloadCompleted,
    ReloadFailed,
    ReloadTriggered,
    category_reloaded_topic,
)
from configcenter.events.bus import EventBus
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, duration_ms, param
from configcenter.services.config_service import ConfigService
from configcenter.services.merge_resolver import MergeResolver
from configcenter.services.resilience import with_retry, with_timeout

ReloadHandler = Callable[[dict[str, Any], ChangeEvent], Any]
Listener = Callable[[dict[str, Any]], Any]

RELOAD_COMPLETED = "reload-completed"
RELOAD_ERROR = "reload-error"
HEALTH_CHECK = "health-check"
HEALTH_CHECK_ERROR = "health-check-error"

FORCE_RELOAD_KEY = "*"


@dataclass
class ReloadHandlerRegistration:
    """A consumer interested in reloads of some categories."""

    service_name: str
    categories: list[str]
    handler: ReloadHandler
    environments: list[Environment] | None = None  # None matches every environment
    priority: int = 100  # lower runs first
    timeout_ms: int = 30000

    def matches(self, category: str, environment: Environment) -> bool:
        if category not in self.categories:
            return False
        if self.environments is None:
            return True
        return Environment(environment) in {Environment(e) for e in self.environments}


@dataclass
class ReloadStats:
    success_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    last_reload_duration_ms: int | None = None
    last_reload_at: datetime | None = None


class ReloadPhase(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RELOADING = "reloading"
    IDLE_WITH_ERROR = "idle_with_error"


@dataclass
class ReloadKeyState:
    """Reload state of one (category, environment) key."""

    pending: bool = False
    in_flight: bool = False
    last_error: str | None = None
    last_reload_at: datetime | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def phase(self) -> ReloadPhase:
        if self.in_flight:
            return ReloadPhase.RELOADING
        if self.pending:
            return ReloadPhase.DEBOUNCING
        if self.last_error:
            return ReloadPhase.IDLE_WITH_ERROR
        return ReloadPhase.IDLE


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ServiceHealth:
    status: HealthStatus
    categories: list[str]
    environments: list[Environment] | None
    stats: ReloadStats | None = None


@dataclass
class HealthReport:
    status: HealthStatus
    services: dict[str, ServiceHealth]
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def classify(stats: ReloadStats | None) -> HealthStatus:
    """No errors is healthy; more errors than successes is unhealthy; else degraded."""
    if stats is None or stats.error_count == 0:
        return HealthStatus.HEALTHY
    if stats.error_count > stats.success_count:
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED


class HotReloadCoordinator:
    """One per process; created at start-up and passed to whoever registers handlers."""

    def __init__(
        self,
        config_service: ConfigService,
        resolver: MergeResolver | None = None,
        bus: EventBus | None = None,
        enabled: bool = True,
        debounce_ms: int = 1000,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        health_check: bool = True,
        health_interval_ms: int = 60000,
        use_merged_values: bool = True,
    ) -> None:
        """
        Initialize HotReloadCoordinator.

        Args:
            config_service: Store facade, read when merged values are off
            resolver: Merge resolver, read when merged values are on
            bus: Bus for reload lifecycle events
            enabled: When False change events are ignored
            debounce_ms: Quiet period after the last event before a reload
            max_retries: Total attempts per handler per reload
            retry_delay_ms: Pause between attempts
            health_check: Run the periodic health check after ``start()``
            health_interval_ms: Period of the health check
            use_merged_values: Dispatch merged values instead of store values
        """
        self.config_service = config_service
        self.resolver = resolver
        self.bus = bus
        self.enabled = enabled
        self.debounce_s = debounce_ms / 1000
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_ms / 1000
        self.health_check = health_check
        self.health_interval_s = health_interval_ms / 1000
        self.use_merged_values = use_merged_values and resolver is not None

        self._handlers: dict[str, ReloadHandlerRegistration] = {}
        self._stats: dict[str, ReloadStats] = {}
        self._states: dict[str, ReloadKeyState] = {}
        self._listeners: dict[str, list[Listener]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._health_task: asyncio.Task[None] | None = None
        self.logger = get_logger().with_category(Category.HOT_RELOAD)

    # Registry

    def register_handler(self, registration: ReloadHandlerRegistration) -> None:
        """Register or replace the handler of ``registration.service_name``."""
        self._handlers.pop(registration.service_name, None)
        self._handlers[registration.service_name] = registration
        self._stats.setdefault(registration.service_name, ReloadStats())
        self.logger.info(
            "Reload handler registered",
            param("service", registration.service_name),
            param("categories", registration.categories),
            param("priority", registration.priority),
        )

    def unregister_handler(self, service_name: str) -> bool:
        removed = self._handlers.pop(service_name, None) is not None
        self._stats.pop(service_name, None)
        if removed:
            self.logger.info("Reload handler unregistered", param("service", service_name))
        return removed

    def handlers_for(self, category: str, environment: Environment) -> list[ReloadHandlerRegistration]:
        """Matching handlers by priority; ties keep registration order."""
        matching = [h for h in self._handlers.values() if h.matches(category, environment)]
        return sorted(matching, key=lambda h: h.priority)

    # Observers

    def on(self, name: str, listener: Listener) -> None:
        self._listeners.setdefault(name, []).append(listener)

    def off(self, name: str, listener: Listener) -> None:
        listeners = self._listeners.get(name, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, name: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(name, [])):
            try:
                listener(payload)
            except Exception as e:
                self.logger.error("Reload listener failed", e, param("notification", name))

    # Change events

    def handle_change_event(self, event: ChangeEvent) -> None:
        """Arm, or re-arm, the debounce timer of the event's key."""
        if not self.enabled:
            return

        key = event.reload_key
        state = self._states.setdefault(key, ReloadKeyState())
        if state.timer is not None:
            state.timer.cancel()

        loop = asyncio.get_running_loop()
        state.pending = True
        state.timer = loop.call_later(self.debounce_s, self._on_debounce_elapsed, key, event)
        self.logger.debug(
            "Reload debounced",
            param("key", key),
            param("event", event.type),
            param("config_key", event.key),
        )

    def _on_debounce_elapsed(self, key: str, event: ChangeEvent) -> None:
        state = self._states.setdefault(key, ReloadKeyState())
        state.timer = None
        state.pending = False
        if state.in_flight:
            self.logger.debug("Reload already in flight, trigger dropped", param("key", key))
            return

        task = asyncio.get_running_loop().create_task(self._reload_in_background(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reload_in_background(self, event: ChangeEvent) -> None:
        try:
            await self.reload(event)
        except Exception as e:
            self.logger.error(
                "Background reload failed",
                e,
                param("category", event.category),
                param("environment", Environment(event.environment).value),
            )

    # Reload

    async def reload(self, event: ChangeEvent) -> ReloadCompleted:
        """
        Read the current values and dispatch them to every matching handler.

        Handler failures are isolated and counted; a failure to read the
        values is published as ``reload.failed`` and raised. Reloads of one
        key never overlap: a call made while the key is in flight waits for
        that reload to finish, then runs.
        """
        state = self._states.setdefault(event.reload_key, ReloadKeyState())
        if state.in_flight:
            self.logger.debug("Waiting for in-flight reload", param("key", event.reload_key))
        async with state.lock:
            state.in_flight = True
            try:
                return await self._reload_locked(event, state)
            finally:
                state.in_flight = False

    async def _reload_locked(self, event: ChangeEvent, state: ReloadKeyState) -> ReloadCompleted:
        category = event.category
        environment = Environment(event.environment)
        started = time.monotonic()

        handlers = self.handlers_for(category, environment)
        await self._publish(
            TOPIC_RELOAD_TRIGGERED,
            ReloadTriggered(
                category=category,
                environment=environment,
                handler_count=len(handlers),
                requested_by=event.actor,
            ).to_payload(),
        )

        try:
            values = await self._load_values(category, environment)
        except Exception as e:
            state.last_error = str(e)
            self.logger.error(
                "Reload aborted, values unavailable",
                e,
                param("category", category),
                param("environment", environment.value),
            )
            self._emit(
                RELOAD_ERROR,
                {"category": category, "environment": environment.value, "error": str(e)},
            )
            await self._publish(
                TOPIC_RELOAD_FAILED,
                ReloadFailed(
                    category=category,
                    environment=environment,
                    error=str(e),
                    requested_by=event.actor,
                ).to_payload(),
            )
            raise

        errors: list[str] = []
        for registration in handlers:
            error = await self._dispatch(registration, values, event)
            if error is not None:
                errors.append(f"{registration.service_name}: {error}")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        completed = ReloadCompleted(
            category=category,
            environment=environment,
            success_count=len(handlers) - len(errors),
            error_count=len(errors),
            duration_ms=elapsed_ms,
            errors=errors,
            requested_by=event.actor,
        )
        state.last_error = "; ".join(errors) or None
        state.last_reload_at = completed.reloaded_at

        payload = completed.to_payload()
        await self._publish(TOPIC_RELOAD_COMPLETED, payload)
        await self._publish(category_reloaded_topic(category), payload)
        self._emit(RELOAD_COMPLETED, payload)

        self.logger.info(
            "Reload completed",
            param("category", category),
            param("environment", environment.value),
            param("handlers", len(handlers)),
            param("errors", len(errors)),
            duration_ms(elapsed_ms),
        )
        return completed

    async def force_reload(
        self,
        category: str,
        environment: Environment | None = None,
        actor: str | None = None,
    ) -> ReloadCompleted:
        """Reload now, bypassing the debounce; read failures propagate."""
        event = ConfigUpdated(
            category=category,
            key=FORCE_RELOAD_KEY,
            environment=self.config_service.resolve_environment(environment),
            actor=actor,
            reason="Force reload",
        )
        return await self.reload(event)

    async def _load_values(self, category: str, environment: Environment) -> dict[str, Any]:
        if self.use_merged_values and self.resolver is not None:
            merged = await self.resolver.merge(category, environment)
            return merged.values
        return self.config_service.get_values(category, environment)

    async def _dispatch(
        self,
        registration: ReloadHandlerRegistration,
        values: dict[str, Any],
        event: ChangeEvent,
    ) -> str | None:
        """Run one handler with timeout and retries; returns the error text on failure."""
        stats = self._stats.setdefault(registration.service_name, ReloadStats())
        started = time.monotonic()

        async def invoke() -> None:
            result = registration.handler(dict(values), event)
            if inspect.isawaitable(result):
                await result

        def on_failure(attempt: int, error: Exception) -> None:
            self.logger.warn(
                "Reload handler attempt failed",
                param("service", registration.service_name),
                param("attempt", attempt),
                param("max_attempts", self.max_retries),
                param("error", str(error)),
            )

        error_text: str | None = None
        try:
            await with_retry(
                with_timeout(invoke, registration.timeout_ms / 1000, registration.service_name),
                self.max_retries,
                self.retry_delay_s,
                on_failure=on_failure,
            )
            stats.success_count += 1
        except HandlerError as e:
            error_text = str(e.cause)
            stats.error_count += 1
            stats.last_error = error_text
            self.logger.error(
                "Reload handler failed",
                e,
                param("service", registration.service_name),
                param("category", event.category),
            )

        stats.last_reload_duration_ms = int((time.monotonic() - started) * 1000)
        stats.last_reload_at = datetime.now(timezone.utc)
        return error_text

    async def _publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.publish(topic, payload)
        except Exception as e:
            self.logger.error("Failed to publish reload event", e, param("topic", topic))

    # Stats and state

    def get_reload_stats(self) -> dict[str, ReloadStats]:
        return dict(self._stats)

    def reset_stats(self) -> None:
        self._stats = {name: ReloadStats() for name in self._handlers}

    def key_state(self, category: str, environment: Environment) -> ReloadKeyState:
        key = f"{category}:{Environment(environment).value}"
        return self._states.get(key, ReloadKeyState())

    # Health

    def perform_health_check(self) -> HealthReport | None:
        """Classify every registered service; failures are emitted, never raised."""
        try:
            services = {
                name: ServiceHealth(
                    status=classify(self._stats.get(name)),
                    categories=list(registration.categories),
                    environments=registration.environments,
                    stats=self._stats.get(name),
                )
                for name, registration in self._handlers.items()
            }
            statuses = {service.status for service in services.values()}
            if HealthStatus.UNHEALTHY in statuses:
                overall = HealthStatus.UNHEALTHY
            elif HealthStatus.DEGRADED in statuses:
                overall = HealthStatus.DEGRADED
            else:
                overall = HealthStatus.HEALTHY
            report = HealthReport(status=overall, services=services)
        except Exception as e:
            self.logger.error("Health check failed", e)
            self._emit(HEALTH_CHECK_ERROR, {"error": str(e)})
            return None

        self._emit(
            HEALTH_CHECK,
            {
                "status": report.status.value,
                "services": {name: s.status.value for name, s in report.services.items()},
                "checked_at": report.checked_at.isoformat(),
            },
        )
        if report.status is not HealthStatus.HEALTHY:
            self.logger.warn(
                "Hot reload health check found issues",
                param("status", report.status.value),
                param(
                    "unhealthy",
                    [n for n, s in services.items() if s.status is HealthStatus.UNHEALTHY],
                ),
                param(
                    "degraded",
                    [n for n, s in services.items() if s.status is HealthStatus.DEGRADED],
                ),
            )
        return report

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval_s)
            self.perform_health_check()

    # Lifecycle

    def start(self) -> None:
        if self.health_check and self._health_task is None:
            self._health_task = asyncio.get_running_loop().create_task(self._health_loop())
        self.logger.info(
            "Hot reload coordinator started",
            param("enabled", self.enabled),
            param("debounce_ms", int(self.debounce_s * 1000)),
            param("health_check", self.health_check),
        )

    async def shutdown(self) -> None:
        """Cancel timers and the health loop, then forget all state."""
        for state in self._states.values():
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
            state.pending = False

        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None

        # In-flight reloads run to completion
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._handlers.clear()
        self._stats.clear()
        self._states.clear()
        self.logger.info("Hot reload coordinator stopped")
