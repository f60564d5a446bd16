"""Connector metric samples.

The engine only produces samples; a MetricsSink decides where they go. Every sample is
also mirrored into a Prometheus counter so /metrics shows emission volume per metric.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from prometheus_client import Counter
from integration_engine.clock import Clock, utcnow
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import MetricType
from integration_engine.models.tables import ConnectorMetric

logger = logging.getLogger(__name__)

METRIC_SAMPLES = Counter('integration_metric_samples_total', 'Connector metric samples emitted', ['metric', 'type'])
METRIC_SINK_ERRORS = Counter('integration_metric_sink_errors_total', 'Metric sink write failures', ['sink'])


@dataclass
class MetricSample:
    connector_id: str
    metric_name: str
    value: float
    metric_type: MetricType = MetricType.GAUGE
    unit: Optional[str] = None
    dimensions: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    aggregation_interval: Optional[int] = None

    def to_row(self) -> ConnectorMetric:
        return ConnectorMetric(
            connector_id=self.connector_id,
            metric_type=self.metric_type,
            metric_name=self.metric_name,
            value=float(self.value),
            unit=self.unit,
            dimensions=self.dimensions,
            tags=self.tags,
            timestamp=self.timestamp or utcnow(),
            aggregation_interval=self.aggregation_interval,
        )


class MetricsSink(Protocol):
    def write(self, samples: List[MetricSample]) -> None: ...

    def flush(self) -> None: ...


class StorageMetricsSink:
    """Appends ConnectorMetric rows."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def write(self, samples: List[MetricSample]) -> None:
        if not samples:
            return
        with self.storage.session() as s:
            s.add_all([smp.to_row() for smp in samples])

    def flush(self) -> None:
        return None


class BufferedMetricsSink:
    """Batches samples in memory and forwards them to `inner` every `batch_size` samples."""

    def __init__(self, inner: MetricsSink, batch_size: int = 100):
        self.inner = inner
        self.batch_size = batch_size
        self._buf: List[MetricSample] = []
        self._lock = threading.Lock()

    def write(self, samples: List[MetricSample]) -> None:
        with self._lock:
            self._buf.extend(samples)
            if len(self._buf) < self.batch_size:
                return
            batch, self._buf = self._buf, []
        self.inner.write(batch)

    def flush(self) -> None:
        with self._lock:
            batch, self._buf = self._buf, []
        self.inner.write(batch)
        self.inner.flush()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)


class MetricsCollector:
    def __init__(self, sink: MetricsSink, clock: Clock = utcnow):
        self.sink = sink
        self.clock = clock

    def record(self, connector_id: str, name: str, value: float, metric_type: MetricType = MetricType.GAUGE,
               unit: str | None = None, dimensions: Dict[str, Any] | None = None, tags: List[str] | None = None,
               interval: int | None = None) -> MetricSample:
        sample = MetricSample(
            connector_id=connector_id,
            metric_name=name,
            value=value,
            metric_type=metric_type,
            unit=unit,
            dimensions=dict(dimensions or {}),
            tags=list(tags or []),
            timestamp=self.clock(),
            aggregation_interval=interval,
        )
        METRIC_SAMPLES.labels(name, metric_type.value).inc()
        try:
            self.sink.write([sample])
        except Exception:
            # emission never fails the caller
            METRIC_SINK_ERRORS.labels(type(self.sink).__name__).inc()
            logger.exception("metric sink write failed", extra={"metric": name, "connector_id": connector_id})
        return sample

    def increment(self, connector_id: str, name: str, amount: float = 1, **kw) -> MetricSample:
        return self.record(connector_id, name, amount, MetricType.COUNTER, **kw)

    def gauge(self, connector_id: str, name: str, value: float, **kw) -> MetricSample:
        return self.record(connector_id, name, value, MetricType.GAUGE, **kw)

    def observe(self, connector_id: str, name: str, value: float, **kw) -> MetricSample:
        return self.record(connector_id, name, value, MetricType.HISTOGRAM, **kw)

    def flush(self):
        self.sink.flush()
