"""Connector definitions: registration, templates, status and health bookkeeping."""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import jsonschema
from pydantic import ValidationError
from sqlalchemy import or_
from prometheus_client import Counter, Gauge
from integration_engine.clock import Clock, utcnow
from integration_engine.errors import (
    InvalidConfigError, NotFoundError, DuplicateRecordError, ReferentialIntegrityError, InvalidTransitionError,
)
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import ConnectorStatus, ConnectorType, HealthStatus
from integration_engine.models.tables import (
    Connector, ConnectorTemplate, SyncJob, IntegrationEvent, ConnectorMetric,
)
from integration_engine.validation.schemas import ConnectorRegistration, ConnectorConfig, ConnectorCapabilities
from integration_engine.engine.metrics import MetricsCollector

logger = logging.getLogger(__name__)

CONNECTORS_REGISTERED = Counter('integration_connectors_registered_total', 'Connectors registered', ['type'])
CONNECTOR_HEALTH = Gauge('integration_connector_health', '1 when the connector is HEALTHY', ['connector'])

HEALTH_METRIC = "health_status"


def _errors(ve: ValidationError, prefix: str = "") -> list[str]:
    return [f"{prefix}{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in ve.errors()]


class ConnectorRegistry:
    def __init__(self, storage: Storage, metrics: Optional[MetricsCollector] = None, clock: Clock = utcnow):
        self.storage = storage
        self.metrics = metrics
        self.clock = clock
        self.connectors = storage.repo(Connector)
        self.templates = storage.repo(ConnectorTemplate)

    # Validation

    def validate_config(self, connector_type: ConnectorType | str, config: Dict[str, Any],
                        capabilities: Dict[str, Any] | None = None) -> list[str]:
        """Return a list of problems; empty when config and capabilities are acceptable."""
        problems: list[str] = []
        try:
            ConnectorType(connector_type)
        except ValueError:
            problems.append(f"type: unknown connector type {connector_type}")
        try:
            ConnectorConfig.model_validate(config or {})
        except ValidationError as ve:
            problems.extend(_errors(ve, "config."))
        try:
            ConnectorCapabilities.model_validate(capabilities or {})
        except ValidationError as ve:
            problems.extend(_errors(ve, "capabilities."))
        return problems

    # Registration

    def register(self, registration: ConnectorRegistration | Dict[str, Any], template_id: int | None = None) -> Connector:
        try:
            reg = registration if isinstance(registration, ConnectorRegistration) else ConnectorRegistration.model_validate(registration)
        except ValidationError as ve:
            raise InvalidConfigError("invalid connector registration", _errors(ve)) from ve
        problems = self.validate_config(reg.type, reg.config, reg.capabilities)
        if problems:
            raise InvalidConfigError(f"invalid config for connector {reg.name}", problems)
        if self.connectors.find_one(Connector.name == reg.name) is not None:
            raise DuplicateRecordError(f"connector name already registered: {reg.name}")
        now = self.clock()
        connector = Connector(
            name=reg.name,
            type=reg.type,
            provider=reg.provider,
            version=reg.version,
            config=reg.config,
            capabilities=reg.capabilities,
            status=ConnectorStatus.ACTIVE,
            health=HealthStatus.UNKNOWN,
            sync_interval=reg.sync_interval,
            sync_strategy=reg.sync_strategy,
            sync_enabled=reg.sync_enabled,
            next_sync=now if reg.sync_enabled else None,
            rate_limit_per_min=reg.rate_limit_per_min,
            rate_limit_per_hour=reg.rate_limit_per_hour,
            encryption_key=reg.encryption_key,
            certificate=reg.certificate,
            tenant_id=reg.tenant_id,
            template_id=template_id,
            created_by=reg.created_by,
            created_at=now,
            updated_at=now,
        )
        connector = self.connectors.add(connector)
        CONNECTORS_REGISTERED.labels(reg.type.value).inc()
        logger.info("connector registered", extra={"connector_id": connector.id, "connector": reg.name, "provider": reg.provider})
        return connector

    def add_template(self, name: str, connector_type: ConnectorType, provider: str, config_template: Dict[str, Any],
                     validation_schema: Dict[str, Any] | None = None, capabilities: Dict[str, Any] | None = None,
                     documentation: str | None = None, version: str = "1.0.0",
                     min_engine_version: str | None = None, max_engine_version: str | None = None) -> ConnectorTemplate:
        if validation_schema is not None:
            try:
                jsonschema.Draft7Validator.check_schema(validation_schema)
            except jsonschema.SchemaError as e:
                raise InvalidConfigError(f"template {name}: invalid validation schema", [e.message]) from e
        if self.templates.find_one(ConnectorTemplate.name == name) is not None:
            raise DuplicateRecordError(f"template already exists: {name}")
        return self.templates.add(ConnectorTemplate(
            name=name,
            connector_type=connector_type,
            provider=provider,
            config_template=config_template,
            capabilities=capabilities or {},
            validation_schema=validation_schema,
            documentation=documentation,
            version=version,
            min_engine_version=min_engine_version,
            max_engine_version=max_engine_version,
        ))

    def register_from_template(self, template_name: str, name: str, overrides: Dict[str, Any] | None = None,
                               **registration: Any) -> Connector:
        """Provision a connector from a template: template config + overrides, checked against the template schema."""
        tpl = self.templates.find_one(ConnectorTemplate.name == template_name)
        if tpl is None:
            raise NotFoundError(f"template {template_name} not found")
        config = {**(tpl.config_template or {}), **(overrides or {})}
        if tpl.validation_schema:
            validator = jsonschema.Draft7Validator(tpl.validation_schema)
            errs = sorted(validator.iter_errors(config), key=lambda e: list(e.path))
            if errs:
                raise InvalidConfigError(
                    f"config does not satisfy template {template_name}",
                    [f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errs],
                )
        payload = {
            "name": name,
            "type": tpl.connector_type,
            "provider": tpl.provider,
            "config": config,
            "capabilities": tpl.capabilities or {},
            **registration,
        }
        connector = self.register(payload, template_id=tpl.id)
        self.templates.increment(tpl.id, usage_count=1)
        return connector

    # Lookup

    def get(self, connector_id: str) -> Connector:
        c = self.connectors.get(connector_id)
        if c is None:
            raise NotFoundError(f"connector {connector_id} not found")
        return c

    def get_by_name(self, name: str) -> Connector:
        c = self.connectors.find_one(Connector.name == name)
        if c is None:
            raise NotFoundError(f"connector {name} not found")
        return c

    def list_due(self, now: datetime | None = None) -> list[Connector]:
        now = now or self.clock()
        return self.connectors.list(
            Connector.sync_enabled.is_(True),
            Connector.status == ConnectorStatus.ACTIVE,
            or_(Connector.next_sync.is_(None), Connector.next_sync <= now),
            order_by=(Connector.next_sync, Connector.created_at),
        )

    # Health and status

    def update_health(self, connector_id: str, health: HealthStatus) -> Connector:
        """Stamp last_health_check; emit a health metric only when the value changed. Never touches status."""
        current = self.get(connector_id)
        now = self.clock()
        updated = self.connectors.update(connector_id, health=health, last_health_check=now)
        if current.health != health:
            CONNECTOR_HEALTH.labels(connector_id).set(1 if health == HealthStatus.HEALTHY else 0)
            if self.metrics is not None:
                self.metrics.gauge(connector_id, HEALTH_METRIC, 1 if health == HealthStatus.HEALTHY else 0,
                                   dimensions={"status": health.value, "previous": current.health.value})
            logger.info("connector health changed", extra={"connector_id": connector_id, "from": current.health.value, "to": health.value})
        return updated

    def set_status(self, connector_id: str, status: ConnectorStatus, reason: str, actor: str | None = None) -> Connector:
        if not reason:
            raise InvalidConfigError("status change requires a reason")
        current = self.get(connector_id)
        if current.status == ConnectorStatus.DEPRECATED and status != ConnectorStatus.DEPRECATED:
            raise InvalidTransitionError("connector", current.status, status)
        stamped = f"{reason} (by {actor})" if actor else reason
        logger.info("connector status changed", extra={"connector_id": connector_id, "from": current.status.value, "to": status.value, "reason": stamped})
        return self.connectors.update(connector_id, status=status, status_reason=stamped[:512], updated_at=self.clock())

    def deprecate(self, connector_id: str, reason: str, actor: str | None = None) -> Connector:
        c = self.set_status(connector_id, ConnectorStatus.DEPRECATED, reason, actor)
        return self.connectors.update(connector_id, sync_enabled=False, next_sync=None) if c.sync_enabled else c

    def set_sync_enabled(self, connector_id: str, enabled: bool) -> Connector:
        c = self.get(connector_id)
        return self.connectors.update(
            connector_id,
            sync_enabled=enabled,
            next_sync=(c.next_sync or self.clock()) if enabled else None,
        )

    def mark_synced(self, connector_id: str, at: datetime | None = None) -> Connector:
        at = at or self.clock()
        c = self.get(connector_id)
        next_sync = at + timedelta(seconds=c.sync_interval) if c.sync_enabled else None
        return self.connectors.update(connector_id, last_sync=at, next_sync=next_sync)

    def schedule_next(self, connector_id: str, at: datetime) -> Connector:
        """Push next_sync one interval past `at` so a due connector is picked up once per interval."""
        c = self.get(connector_id)
        return self.connectors.update(connector_id, next_sync=at + timedelta(seconds=c.sync_interval))

    def delete(self, connector_id: str):
        """Hard delete, refused while any job, event or metric still references the connector."""
        self.get(connector_id)
        owned = {
            "sync_jobs": self.storage.repo(SyncJob).count(SyncJob.connector_id == connector_id),
            "events": self.storage.repo(IntegrationEvent).count(IntegrationEvent.connector_id == connector_id),
            "metrics": self.storage.repo(ConnectorMetric).count(ConnectorMetric.connector_id == connector_id),
        }
        blocking = {k: v for k, v in owned.items() if v}
        if blocking:
            raise ReferentialIntegrityError(f"connector {connector_id} still owns {blocking}; deprecate it instead")
        with self.storage.session() as s:
            obj = s.get(Connector, connector_id)
            if obj is not None:
                s.delete(obj)
        logger.info("connector deleted", extra={"connector_id": connector_id})
