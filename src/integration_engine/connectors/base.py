from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Callable
import logging
import threading
import time
from prometheus_client import Counter, Histogram
from integration_engine.errors import FatalAdapterError
from integration_engine.models.enums import HealthStatus

ADAPTER_CALLS = Counter('integration_adapter_calls_total', 'Adapter invocations', ['provider', 'op'])
ADAPTER_RECORDS = Counter('integration_adapter_records_total', 'Records pulled per provider', ['provider'])
ADAPTER_ERRORS = Counter('integration_adapter_errors_total', 'Adapter errors by category', ['provider', 'category'])
ADAPTER_LATENCY = Histogram('integration_adapter_latency_seconds', 'Latency of adapter calls', ['provider', 'op'], buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60))

logger = logging.getLogger(__name__)


@dataclass
class RawRecord:
    """One change pulled from an external system."""
    external_id: str
    data: Dict[str, Any]
    record_type: str = "record"
    changed_at: Optional[datetime] = None
    deleted: bool = False

    @property
    def email(self) -> Optional[str]:
        v = self.data.get("email")
        return v if isinstance(v, str) and v.strip() else None


@dataclass
class Ack:
    accepted: bool
    external_id: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class ConnectorAdapter(ABC):
    """Vendor protocol boundary. Implementations raise TransientAdapterError for retryable
    failures and FatalAdapterError for anything a retry cannot fix."""

    provider: str = "generic"

    def __init__(self, connector_id: str, config: Dict[str, Any]):
        self.connector_id = connector_id
        self.config = config

    @abstractmethod
    def fetch_changes(self, since: Optional[datetime]) -> list[RawRecord]:
        """Return records changed after `since` (all records when None)."""
        ...

    @abstractmethod
    def push_change(self, record: Dict[str, Any]) -> Ack:
        ...

    def health(self) -> HealthStatus:
        return HealthStatus.HEALTHY

    def instrumented(self, op: str, fn: Callable[[], Any]) -> Any:
        """Run one adapter call with metrics."""
        ADAPTER_CALLS.labels(self.provider, op).inc()
        start = time.time()
        try:
            result = fn()
        except Exception as e:
            ADAPTER_ERRORS.labels(self.provider, type(e).__name__).inc()
            raise
        finally:
            ADAPTER_LATENCY.labels(self.provider, op).observe(time.time() - start)
        if op == "fetch" and isinstance(result, list):
            ADAPTER_RECORDS.labels(self.provider).inc(len(result))
        return result


AdapterFactory = Callable[[str, Dict[str, Any]], ConnectorAdapter]


class AdapterRegistry:
    """Maps provider names to adapter factories; adapters are created once per connector."""

    def __init__(self):
        self._factories: dict[str, AdapterFactory] = {}
        self._instances: dict[str, ConnectorAdapter] = {}
        self._lock = threading.Lock()

    def register(self, provider: str, factory: AdapterFactory):
        with self._lock:
            self._factories[provider] = factory

    def providers(self) -> list[str]:
        return sorted(self._factories)

    def for_connector(self, connector) -> ConnectorAdapter:
        with self._lock:
            inst = self._instances.get(connector.id)
            if inst is not None:
                return inst
            factory = self._factories.get(connector.provider)
            if factory is None:
                raise FatalAdapterError(f"no adapter registered for provider {connector.provider}")
            inst = factory(connector.id, dict(connector.config or {}))
            self._instances[connector.id] = inst
            logger.info("adapter created", extra={"connector_id": connector.id, "provider": connector.provider})
            return inst

    def evict(self, connector_id: str):
        with self._lock:
            self._instances.pop(connector_id, None)
