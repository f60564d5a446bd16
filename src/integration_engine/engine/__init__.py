"""Component wiring.

`build_engine()` assembles one engine over a Storage; `get_engine()` caches the
process-wide instance used by Celery tasks and the API.
"""
from __future__ import annotations
import random
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from integration_engine.clock import Clock, utcnow
from integration_engine.config import get_settings
from integration_engine.connectors.base import AdapterRegistry
from integration_engine.connectors.memory import InMemoryAdapter
from integration_engine.infrastructure.circuit_breaker import BreakerRegistry, CircuitConfig
from integration_engine.infrastructure.rate_limit import ConnectorRateLimiter
from integration_engine.infrastructure.storage import Storage
from integration_engine.engine.metrics import MetricsCollector, StorageMetricsSink, MetricsSink
from integration_engine.engine.registry import ConnectorRegistry
from integration_engine.engine.identity import IdentityResolver
from integration_engine.engine.transformation import TransformationEngine
from integration_engine.engine.quality import QualityChecker
from integration_engine.engine.policy import PolicyEngine
from integration_engine.engine.pipeline import EventPipeline
from integration_engine.engine.orchestrator import SyncOrchestrator


@dataclass
class Engine:
    storage: Storage
    metrics: MetricsCollector
    registry: ConnectorRegistry
    identity: IdentityResolver
    transformation: TransformationEngine
    quality: QualityChecker
    policy: PolicyEngine
    pipeline: EventPipeline
    orchestrator: SyncOrchestrator
    adapters: AdapterRegistry


def build_engine(storage: Optional[Storage] = None, clock: Clock = utcnow, adapters: Optional[AdapterRegistry] = None,
                 sink: Optional[MetricsSink] = None, rng: Optional[random.Random] = None) -> Engine:
    s = get_settings()
    storage = storage or Storage()
    if adapters is None:
        adapters = AdapterRegistry()
        adapters.register(InMemoryAdapter.provider, InMemoryAdapter)
    metrics = MetricsCollector(sink or StorageMetricsSink(storage), clock=clock)
    breakers = BreakerRegistry(CircuitConfig(
        failure_threshold=s.circuit_failure_threshold, recovery_timeout=s.circuit_recovery_timeout_seconds,
    ))
    registry = ConnectorRegistry(storage, metrics=metrics, clock=clock)
    identity = IdentityResolver(storage, registry=registry, clock=clock)
    transformation = TransformationEngine(storage, registry=registry, clock=clock)
    quality = QualityChecker(storage, clock=clock)
    policy = PolicyEngine(storage, clock=clock)
    pipeline = EventPipeline(storage, transformation, quality, policy, adapters=adapters, registry=registry,
                             metrics=metrics, breakers=breakers, clock=clock, rng=rng)
    orchestrator = SyncOrchestrator(storage, registry, pipeline, identity, adapters, quality=quality, metrics=metrics,
                                    breakers=breakers, rate_limiter=ConnectorRateLimiter(), clock=clock, rng=rng)
    return Engine(storage, metrics, registry, identity, transformation, quality, policy, pipeline, orchestrator, adapters)


@lru_cache
def get_engine() -> Engine:
    return build_engine()


def reset_engine():
    get_engine.cache_clear()
