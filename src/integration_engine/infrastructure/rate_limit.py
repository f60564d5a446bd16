"""Per-connector token buckets (per minute and per hour).

Buckets are evaluated against the caller's clock so deferral times are deterministic.
"""
from __future__ import annotations
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from prometheus_client import Counter, Gauge

RATE_LIMIT_DEFERRED = Counter('integration_rate_limit_deferred_total', 'Sync jobs deferred by rate limiting', ['connector'])
RATE_LIMIT_TOKENS = Gauge('integration_rate_limit_tokens', 'Tokens left in the per-minute bucket', ['connector'])


@dataclass
class TokenBucket:
    capacity: float
    window_seconds: float
    tokens: float = -1.0
    last_refill: Optional[datetime] = None

    def __post_init__(self):
        if self.tokens < 0:
            self.tokens = self.capacity

    @property
    def rate(self) -> float:
        return self.capacity / self.window_seconds  # tokens per second

    def refill(self, now: datetime):
        if self.last_refill is not None and now > self.last_refill:
            elapsed = (now - self.last_refill).total_seconds()
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        if self.last_refill is None or now > self.last_refill:
            self.last_refill = now

    def resize(self, capacity: float):
        if capacity != self.capacity:
            self.capacity = capacity
            self.tokens = min(self.tokens, capacity)

    def seconds_until_token(self) -> float:
        if self.tokens >= 1 or self.rate <= 0:
            return 0.0
        return (1 - self.tokens) / self.rate


@dataclass
class _ConnectorBuckets:
    minute: TokenBucket
    hour: TokenBucket
    lock: threading.Lock = field(default_factory=threading.Lock)


class ConnectorRateLimiter:
    """Owns the buckets for every connector the orchestrator touches."""

    def __init__(self):
        self._buckets: dict[str, _ConnectorBuckets] = {}
        self._lock = threading.Lock()

    def _get(self, connector_id: str, per_min: int, per_hour: int) -> _ConnectorBuckets:
        with self._lock:
            b = self._buckets.get(connector_id)
            if b is None:
                b = _ConnectorBuckets(TokenBucket(per_min, 60), TokenBucket(per_hour, 3600))
                self._buckets[connector_id] = b
            else:
                b.minute.resize(per_min)
                b.hour.resize(per_hour)
            return b

    def try_acquire(self, connector_id: str, per_min: int, per_hour: int, now: datetime) -> tuple[bool, Optional[datetime]]:
        """Take one token from both buckets, or neither.

        Returns (True, None) on success, otherwise (False, time the next token becomes available).
        """
        b = self._get(connector_id, per_min, per_hour)
        with b.lock:
            b.minute.refill(now)
            b.hour.refill(now)
            if b.minute.tokens >= 1 and b.hour.tokens >= 1:
                b.minute.tokens -= 1
                b.hour.tokens -= 1
                RATE_LIMIT_TOKENS.labels(connector=connector_id).set(b.minute.tokens)
                return True, None
            wait = max(b.minute.seconds_until_token(), b.hour.seconds_until_token())
        RATE_LIMIT_DEFERRED.labels(connector=connector_id).inc()
        return False, now + timedelta(seconds=max(wait, 1.0))

    def refund(self, connector_id: str):
        """Return a token taken by a job that never started."""
        with self._lock:
            b = self._buckets.get(connector_id)
        if b is None:
            return
        with b.lock:
            b.minute.tokens = min(b.minute.capacity, b.minute.tokens + 1)
            b.hour.tokens = min(b.hour.capacity, b.hour.tokens + 1)
            RATE_LIMIT_TOKENS.labels(connector=connector_id).set(b.minute.tokens)

    def reset(self, connector_id: Optional[str] = None):
        with self._lock:
            if connector_id is None:
                self._buckets.clear()
            else:
                self._buckets.pop(connector_id, None)
