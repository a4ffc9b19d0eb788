"""Circuit breaker: per task type failure gate with threshold and cooldown.

Counters are process-wide and shared across workflows: a failing task type
throttles itself whichever workflow triggered it. Each type has its own lock.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Mapping

from meshdag.config import BREAKER_OVERRIDES, DEFAULT_BREAKER_COOLDOWN, DEFAULT_BREAKER_THRESHOLD
from meshdag.models import CircuitBreakerStatus

if TYPE_CHECKING:
    from meshdag.events import EventBus

logger = logging.getLogger(__name__)


@dataclass
class _BreakerState:
    threshold: int
    cooldown: float
    failures: int = 0
    state: str = "closed"  # closed | open | half_open
    last_failure_time: float | None = None
    trial_in_flight: bool = False  # half-open admits one caller until it reports back


class CircuitBreaker:
    """Failure counters keyed by task type."""

    def __init__(
        self,
        threshold: int = DEFAULT_BREAKER_THRESHOLD,
        cooldown: float = DEFAULT_BREAKER_COOLDOWN,
        overrides: Mapping[str, Mapping[str, float]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        event_bus: "EventBus | None" = None,
    ):
        self.threshold = threshold
        self.cooldown = cooldown
        self.overrides = dict(BREAKER_OVERRIDES if overrides is None else overrides)
        self._clock = clock
        self._event_bus = event_bus
        self._states: dict[str, _BreakerState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def configure(self, task_type: str, threshold: int | None = None, cooldown: float | None = None):
        """Set the threshold/cooldown for one task type."""
        values = self.overrides.setdefault(task_type, {})
        if threshold is not None:
            values["threshold"] = threshold
        if cooldown is not None:
            values["cooldown"] = cooldown
        with self._lock_for(task_type):
            state = self._states.get(task_type)
            if state:
                state.threshold, state.cooldown = self._limits(task_type)

    def check(self, task_type: str) -> CircuitBreakerStatus:
        """Gate an attempt.

        A half-open breaker lets the first caller through as the trial and
        reports open to everyone else until that trial records its outcome.
        """
        with self._lock_for(task_type):
            state = self._state(task_type)
            self._maybe_half_open(task_type, state)
            if state.state == "half_open":
                if state.trial_in_flight:
                    return self._status(task_type, state, is_open=True)
                state.trial_in_flight = True
            return self._status(task_type, state)

    def status(self, task_type: str) -> CircuitBreakerStatus:
        """Read the breaker without claiming the half-open trial."""
        with self._lock_for(task_type):
            state = self._state(task_type)
            self._maybe_half_open(task_type, state)
            return self._status(task_type, state, is_open=state.state == "open" or state.trial_in_flight)

    def release(self, task_type: str):
        """Give back a claimed half-open trial that ended without an outcome."""
        with self._lock_for(task_type):
            state = self._states.get(task_type)
            if state is not None:
                state.trial_in_flight = False

    def record_success(self, task_type: str) -> CircuitBreakerStatus:
        with self._lock_for(task_type):
            state = self._state(task_type)
            if state.state != "closed":
                logger.info(f"Circuit closed for task type '{task_type}'")
            state.failures = 0
            state.state = "closed"
            state.trial_in_flight = False
            return self._status(task_type, state)

    def record_failure(self, task_type: str) -> CircuitBreakerStatus:
        with self._lock_for(task_type):
            state = self._state(task_type)
            state.failures += 1
            state.last_failure_time = self._clock()
            state.trial_in_flight = False
            opened = state.state != "open" and (
                state.state == "half_open" or state.failures >= state.threshold
            )
            if opened:
                state.state = "open"
            status = self._status(task_type, state)

        if opened:
            logger.warning(
                f"Circuit opened for task type '{task_type}' after {status.current_failures} failures"
            )
            if self._event_bus:
                self._event_bus.emit_simple("breaker.opened", **status.to_dict())
        return status

    def reset(self, task_type: str | None = None):
        """Forget counters for one type, or for all types."""
        with self._registry_lock:
            if task_type is None:
                self._states.clear()
            else:
                self._states.pop(task_type, None)

    def snapshot(self) -> dict[str, CircuitBreakerStatus]:
        with self._registry_lock:
            types = list(self._states)
        return {t: self.status(t) for t in types}

    # ------------------------------------------------------------------

    def _lock_for(self, task_type: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(task_type)
            if lock is None:
                lock = self._locks[task_type] = threading.Lock()
            return lock

    def _limits(self, task_type: str) -> tuple[int, float]:
        values = self.overrides.get(task_type, {})
        return int(values.get("threshold", self.threshold)), float(values.get("cooldown", self.cooldown))

    def _state(self, task_type: str) -> _BreakerState:
        state = self._states.get(task_type)
        if state is None:
            threshold, cooldown = self._limits(task_type)
            state = self._states[task_type] = _BreakerState(threshold=threshold, cooldown=cooldown)
        return state

    def _maybe_half_open(self, task_type: str, state: _BreakerState):
        if state.state == "open" and self._cooled_down(state):
            state.state = "half_open"
            logger.info(f"Circuit half-open for task type '{task_type}' after {state.cooldown:g}s cooldown")

    def _cooled_down(self, state: _BreakerState) -> bool:
        if state.last_failure_time is None:
            return True
        return self._clock() - state.last_failure_time >= state.cooldown

    @staticmethod
    def _status(task_type: str, state: _BreakerState, is_open: bool | None = None) -> CircuitBreakerStatus:
        return CircuitBreakerStatus(
            task_type=task_type,
            is_open=state.state == "open" if is_open is None else is_open,
            threshold=state.threshold,
            current_failures=state.failures,
            cooldown=state.cooldown,
            state=state.state,
            last_failure_time=state.last_failure_time,
        )
