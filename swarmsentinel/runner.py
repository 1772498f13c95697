"""The monitoring loop: fetch desired state, collect actual state, alert on transitions."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from .errors import Cancelled, CycleError
from .models import ServiceHealth, ServiceStatus, StackHealth, StackSnapshot, State, Store
from .notifier import Notifier
from .swarm_types import ActualState, SwarmClient
from .transition import ServiceTransition, detect_service_transitions

DEFAULT_STACK_KEY = "default"


@dataclass
class FetchResult:
    """Outcome of fetching the compose file."""

    body: bytes = b""
    etag: str = ""
    last_modified: str = ""
    not_modified: bool = False


class ComposeFetcher(ABC):
    """Source of the compose file describing the desired state."""

    @abstractmethod
    def fetch(
        self, previous_etag: str = "", cancel: Optional[threading.Event] = None
    ) -> FetchResult:
        """Fetch the compose file, using the previous ETag for conditional requests."""


class Ticker(ABC):
    """Drives the runner loop."""

    @abstractmethod
    def wait(self, stop: threading.Event) -> bool:
        """Block until the next tick; return False once ``stop`` is set."""

    @abstractmethod
    def stop(self) -> None:
        """Stop ticking."""


class IntervalTicker(Ticker):
    """Ticks at a fixed rate, dropping ticks that a slow consumer missed."""

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError("ticker interval must be greater than zero")
        self.interval = interval
        self._next = time.monotonic() + interval
        self._stopped = threading.Event()

    def wait(self, stop: threading.Event) -> bool:
        while True:
            if stop.is_set() or self._stopped.is_set():
                return False
            remaining = self._next - time.monotonic()
            if remaining <= 0:
                missed = int(-remaining // self.interval) + 1
                self._next += missed * self.interval
                return True
            if stop.wait(remaining):
                return False

    def stop(self) -> None:
        self._stopped.set()


class _CycleRecorder(Protocol):
    def record_cycle(self, duration: float, stacks_evaluated: int) -> None: ...


class _MetricsSink(Protocol):
    def observe_cycle_duration(self, duration: float) -> None: ...

    def set_last_successful_cycle_timestamp(self, when: datetime) -> None: ...

    def inc_docker_api_errors(self) -> None: ...

    def set_services_total(self, stack: str, status: str, count: int) -> None: ...

    def inc_alerts_total(self, stack: str, severity: str) -> None: ...


def _sha256_fingerprint(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled()


def _count_statuses(stack_health: StackHealth) -> tuple[int, int, int]:
    statuses = [service.status for service in stack_health.services.values()]
    return (
        statuses.count(ServiceStatus.OK),
        statuses.count(ServiceStatus.DEGRADED),
        statuses.count(ServiceStatus.FAILED),
    )


class Runner:
    """Runs monitoring cycles on a fixed poll interval."""

    def __init__(
        self,
        poll_interval: float,
        *,
        logger: Optional[logging.Logger] = None,
        ticker_factory: Optional[Callable[[float], Ticker]] = None,
        run_once: Optional[Callable[[Optional[threading.Event]], None]] = None,
        compose_fetcher: Optional[ComposeFetcher] = None,
        parse_desired_state: Optional[Callable[[bytes], Any]] = None,
        fingerprint: Optional[Callable[[bytes], str]] = None,
        swarm_client: Optional[SwarmClient] = None,
        stack_name: str = "",
        evaluate_health: Optional[Callable[[Any, Optional[ActualState], bool], StackHealth]] = None,
        state_store: Optional[Store] = None,
        state_lock: Optional[threading.Lock] = None,
        notifier: Optional[Notifier] = None,
        alert_stabilization_cycles: int = 1,
        cycle_tracker: Optional[_CycleRecorder] = None,
        metrics: Optional[_MetricsSink] = None,
        stacks_evaluated: int = 1,
    ):
        if compose_fetcher is not None and parse_desired_state is None:
            raise ValueError("a compose fetcher needs a desired-state parser")
        if state_store is not None and evaluate_health is None:
            raise ValueError("a state store needs a health evaluator")

        self.logger = logger or logging.getLogger(__name__)
        self.poll_interval = poll_interval
        self.ticker_factory = ticker_factory or IntervalTicker
        self._step = run_once or self._default_run_once
        self.compose_fetcher = compose_fetcher
        self.parse_desired_state = parse_desired_state
        self.fingerprint = fingerprint or _sha256_fingerprint
        self.swarm_client = swarm_client
        self.stack_name = stack_name
        self.evaluate_health = evaluate_health
        self.state_store = state_store
        self.state_lock = state_lock
        if state_store is not None and state_lock is None:
            self.state_lock = threading.Lock()
        self.notifier = notifier
        self.alert_stabilization_cycles = alert_stabilization_cycles
        self.cycle_tracker = cycle_tracker
        self.metrics = metrics
        self.stacks_evaluated = stacks_evaluated

        self.compose_etag = ""
        self.compose_hash = ""
        self.last_desired_state: Any = None
        self.last_actual_state: Optional[ActualState] = None

    @property
    def stack_key(self) -> str:
        return self.stack_name or DEFAULT_STACK_KEY

    def run(self, stop: Optional[threading.Event] = None) -> None:
        """Run a cycle now and then on every tick, until ``stop`` is set."""
        if self.poll_interval <= 0:
            raise ValueError("poll interval must be greater than zero")
        if stop is None:
            stop = threading.Event()

        self._run_logged(stop, "initial run cycle failed")
        ticker = self.ticker_factory(self.poll_interval)
        try:
            while not stop.is_set() and ticker.wait(stop):
                self._run_logged(stop, "run cycle failed")
        finally:
            ticker.stop()
        self.logger.info("runner stopped")

    def _run_logged(self, stop: threading.Event, message: str) -> None:
        try:
            self.run_once(stop)
        except Exception as exc:
            runtime = isinstance(exc, CycleError)
            if runtime:
                self.logger.error(
                    "%s (runtime_error=true): %s", message, exc, extra={"runtime_error": True}
                )
            else:
                self.logger.error("%s: %s", message, exc)

    def run_once(self, cancel: Optional[threading.Event] = None) -> None:
        """Run a single cycle, recording its timing when it succeeds."""
        start = time.monotonic()
        self._step(cancel)
        duration = time.monotonic() - start
        if self.cycle_tracker is not None:
            self.cycle_tracker.record_cycle(duration, max(self.stacks_evaluated, 1))
        if self.metrics is not None:
            self.metrics.observe_cycle_duration(duration)
            self.metrics.set_last_successful_cycle_timestamp(datetime.now(timezone.utc))

    def _default_run_once(self, cancel: Optional[threading.Event]) -> None:
        _check_cancel(cancel)
        if self.compose_fetcher is not None:
            self._refresh_desired_state(cancel)

        if self.swarm_client is None:
            return
        _check_cancel(cancel)

        if self.last_desired_state is None:
            self.logger.warning("desired state not yet available, collecting actual state only")

        try:
            actual = self.swarm_client.get_actual_state(self.stack_name, cancel)
        except Exception as exc:
            if self.metrics is not None:
                self.metrics.inc_docker_api_errors()
            raise CycleError("swarm actual state", exc) from exc
        self.last_actual_state = actual

        services = actual.services if actual is not None else {}
        running = actual.running_replicas() if actual is not None else 0
        if self.stack_name:
            self.logger.info(
                "collected actual state (services=%d running_replicas=%d stack_name=%s)",
                len(services),
                running,
                self.stack_name,
            )
        else:
            self.logger.info(
                "collected actual state (services=%d running_replicas=%d)", len(services), running
            )

        if self.state_store is not None and self.last_desired_state is not None:
            try:
                self.evaluate_and_persist(cancel)
            except Exception as exc:
                raise CycleError("state evaluation", exc) from exc

    def _refresh_desired_state(self, cancel: Optional[threading.Event]) -> None:
        assert self.compose_fetcher is not None and self.parse_desired_state is not None
        try:
            result = self.compose_fetcher.fetch(self.compose_etag, cancel)
        except Exception as exc:
            raise CycleError("compose fetch", exc) from exc

        if result.etag:
            self.compose_etag = result.etag
        if result.not_modified:
            self.logger.debug("compose unchanged")
            return

        try:
            fingerprint = self.fingerprint(result.body)
        except Exception as exc:
            raise CycleError("compose fingerprint", exc) from exc
        if fingerprint == self.compose_hash:
            self.logger.debug("compose fingerprint unchanged")
            return
        self.compose_hash = fingerprint
        self.logger.info(
            "compose fetched (bytes=%d etag=%s last_modified=%s fingerprint=%s)",
            len(result.body),
            result.etag,
            result.last_modified,
            fingerprint,
        )

        try:
            desired = self.parse_desired_state(result.body)
        except Exception as exc:
            raise CycleError("compose parse", exc) from exc
        self.last_desired_state = desired
        count = len(getattr(desired, "services", desired) or ()) if desired is not None else 0
        self.logger.info("parsed desired state (services=%d)", count)

    def evaluate_and_persist(self, cancel: Optional[threading.Event] = None) -> None:
        """Evaluate health, persist the stack snapshot and notify about transitions."""
        if self.state_store is None or self.evaluate_health is None:
            raise RuntimeError("state store and health evaluator are required")
        _check_cancel(cancel)

        stack_health = self.evaluate_health(
            self.last_desired_state, self.last_actual_state, bool(self.stack_name)
        )
        stack_key = self.stack_key

        if self.last_actual_state is not None:
            for service in self.last_actual_state.services.values():
                if service.update_state:
                    self.logger.info(
                        "service update status (service=%s update_state=%s stack_name=%s)",
                        service.name,
                        service.update_state,
                        stack_key,
                    )

        now = datetime.now(timezone.utc)
        with self.state_lock or _NullLock():
            try:
                loaded = self.state_store.load()
            except Exception as exc:
                raise CycleError("state load", exc) from exc
            existing = loaded.stacks.get(stack_key) if loaded.stacks else None
            snapshot = replace(existing) if existing is not None else None

            updated, transitions = self.stabilize_transitions(snapshot, stack_health)
            if loaded.stacks is None:
                loaded.stacks = {}
            loaded.stacks[stack_key] = StackSnapshot(
                desired_fingerprint=self.compose_hash, services=updated, evaluated_at=now
            )
            try:
                self.state_store.save(loaded)
            except Exception as exc:
                raise CycleError("state save", exc) from exc

        self._log_cycle_summary(stack_health, transitions)
        self._record_metrics(stack_health, transitions)
        for change in transitions:
            self._log_transition(change)

        if self.notifier is not None and transitions:
            try:
                self.notifier.notify(stack_key, transitions, cancel)
            except Exception as exc:
                self.logger.error("failed to send notifications: %s", exc)

    def stabilize_transitions(
        self, prev: Optional[StackSnapshot], current: StackHealth
    ) -> tuple[dict[str, ServiceHealth], list[ServiceTransition]]:
        """Track consecutive cycles per service and emit only stabilized transitions."""
        stabilization = max(self.alert_stabilization_cycles, 1)
        prev_services: Mapping[str, ServiceHealth] = (
            prev.services if prev is not None and prev.services else {}
        )
        first_run = not prev_services

        updated: dict[str, ServiceHealth] = {}
        eligible: dict[str, ServiceHealth] = {}
        for name, service in current.services.items():
            had_prev = name in prev_services
            prev_service = prev_services.get(name, ServiceHealth())

            consecutive = 1
            if had_prev and prev_service.status == service.status:
                consecutive = (
                    prev_service.consecutive_cycles + 1 if prev_service.consecutive_cycles > 0 else 2
                )

            last_notified = prev_service.last_notified_status
            if last_notified == ServiceStatus.UNKNOWN and had_prev:
                last_notified = prev_service.status

            service = replace(
                service, consecutive_cycles=consecutive, last_notified_status=last_notified
            )

            if first_run:
                should_notify = service.status != ServiceStatus.OK
            elif service.status != last_notified:
                should_notify = stabilization <= 1 or consecutive >= stabilization
            else:
                should_notify = False

            if should_notify:
                eligible[name] = service
                service = replace(service, last_notified_status=service.status)
            updated[name] = service

        transitions = detect_service_transitions(
            prev, StackHealth(status=current.status, services=eligible)
        )
        return updated, transitions

    def _log_cycle_summary(
        self, stack_health: StackHealth, transitions: Sequence[ServiceTransition]
    ) -> None:
        ok, degraded, failed = _count_statuses(stack_health)
        self.logger.info(
            "health evaluation summary (stack_name=%s fingerprint=%s services_evaluated=%d "
            "services_ok=%d services_degraded=%d services_failed=%d transitions=%d)",
            self.stack_key,
            self.compose_hash,
            len(stack_health.services),
            ok,
            degraded,
            failed,
            len(transitions),
        )

    def _record_metrics(
        self, stack_health: StackHealth, transitions: Sequence[ServiceTransition]
    ) -> None:
        if self.metrics is None:
            return
        ok, degraded, failed = _count_statuses(stack_health)
        stack = self.stack_key
        self.metrics.set_services_total(stack, "ok", ok)
        self.metrics.set_services_total(stack, "degraded", degraded)
        self.metrics.set_services_total(stack, "failed", failed)
        for change in transitions:
            self.metrics.inc_alerts_total(stack, change.current_status.value.lower() or "unknown")

    def _log_transition(self, change: ServiceTransition) -> None:
        if change.current_status == ServiceStatus.FAILED:
            level = logging.ERROR
        elif change.current_status == ServiceStatus.DEGRADED:
            level = logging.WARNING
        else:
            level = logging.INFO

        details = [
            f"service={change.name}",
            f"previous_status={change.previous_status.value}",
            f"current_status={change.current_status.value}",
            f"reasons={list(change.reasons)}",
        ]
        replica = change.replica_change
        if replica is not None:
            details += [
                f"desired_replicas={replica.current_desired}",
                f"running_replicas={replica.current_running}",
                f"desired_delta={replica.desired_delta}",
                f"running_delta={replica.running_delta}",
            ]
        image = change.image_change
        if image is not None:
            details += [
                f"desired_image={image.current_desired}",
                f"actual_image={image.current_actual}",
            ]
        if change.drift:
            details.append(f"drift={[detail.to_dict() for detail in change.drift]}")
        details.append(f"stack_name={self.stack_key}")
        self.logger.log(level, "service transition detected (%s)", " ".join(details))


class _NullLock:
    def __enter__(self) -> None:
        return None

    def __exit__(self, *exc_info: object) -> None:
        return None