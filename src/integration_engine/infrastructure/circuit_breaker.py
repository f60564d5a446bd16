"""Circuit breaker for adapter calls.

Fails fast when an external system keeps erroring so a sick connector does not tie up
sync workers. One breaker per connector, owned by a BreakerRegistry instance.
"""
from __future__ import annotations
import time
import threading
from enum import Enum
from typing import Callable, TypeVar, Optional
from dataclasses import dataclass
from prometheus_client import Counter, Gauge
from integration_engine.errors import TransientAdapterError

T = TypeVar('T')


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing fast
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds
    half_open_max_calls: int = 3


CIRCUIT_BREAKER_STATE = Gauge('integration_circuit_state_info', 'Circuit breaker current state', ['connector', 'state'])
CIRCUIT_BREAKER_CALLS = Counter('integration_circuit_calls_total', 'Adapter calls through circuit breaker', ['connector', 'result'])


class CircuitBreakerOpenError(TransientAdapterError):
    pass


class CircuitBreaker:
    def __init__(self, name: str, config: Optional[CircuitConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config or CircuitConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.half_open_calls = 0
        self._clock = clock
        self._lock = threading.RLock()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Execute func with circuit breaker protection."""
        with self._lock:
            if not self._should_attempt_call():
                CIRCUIT_BREAKER_CALLS.labels(connector=self.name, result='rejected').inc()
                raise CircuitBreakerOpenError(f"Circuit breaker open for {self.name}")
        try:
            result = func(*args, **kwargs)
        except Exception:
            with self._lock:
                self._on_failure()
            CIRCUIT_BREAKER_CALLS.labels(connector=self.name, result='failure').inc()
            raise
        with self._lock:
            self._on_success()
        CIRCUIT_BREAKER_CALLS.labels(connector=self.name, result='success').inc()
        return result

    def _should_attempt_call(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.half_open_calls = 0
                self._update_state_metric()
                return True
            return False
        return self.half_open_calls < self.config.half_open_max_calls

    def _should_attempt_reset(self) -> bool:
        return (self.last_failure_time is not None and
                self._clock() - self.last_failure_time >= self.config.recovery_timeout)

    def _on_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_calls += 1
            if self.half_open_calls >= self.config.half_open_max_calls:
                self._reset()
        elif self.state == CircuitState.CLOSED:
            self.failure_count = max(0, self.failure_count - 1)  # gradual recovery

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self._trip()
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._trip()

    def _trip(self):
        self.state = CircuitState.OPEN
        self._update_state_metric()

    def _reset(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        self._update_state_metric()

    def _update_state_metric(self):
        for state in CircuitState:
            CIRCUIT_BREAKER_STATE.labels(connector=self.name, state=state.value).set(0)
        CIRCUIT_BREAKER_STATE.labels(connector=self.name, state=self.state.value).set(1)


class BreakerRegistry:
    """Per-connector breakers. Instance scoped so tests and engines don't share state."""

    def __init__(self, config: Optional[CircuitConfig] = None, clock: Callable[[], float] = time.monotonic):
        self._config = config or CircuitConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, self._config, self._clock)
            return self._breakers[name]

    def reset(self, name: str):
        with self._lock:
            self._breakers.pop(name, None)
