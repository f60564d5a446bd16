import pytest

from integration_engine.errors import (
    DuplicateRecordError, InvalidConfigError, InvalidTransitionError, NotFoundError, ReferentialIntegrityError,
)
from integration_engine.models.enums import ConnectorStatus, ConnectorType, HealthStatus
from integration_engine.models.tables import ConnectorMetric


class TestRegistration:
    def test_register_sets_defaults(self, engine, make_connector, clock):
        c = make_connector()
        assert c.status == ConnectorStatus.ACTIVE
        assert c.health == HealthStatus.UNKNOWN
        assert c.next_sync == clock.now
        assert engine.registry.get_by_name(c.name).id == c.id

    def test_config_requires_semver(self, make_connector):
        with pytest.raises(InvalidConfigError) as exc:
            make_connector(config={"version": "v1"})
        assert any("version" in e for e in exc.value.errors)

    def test_config_requires_version(self, make_connector):
        with pytest.raises(InvalidConfigError):
            make_connector(config={"base_url": "https://example.test"})

    def test_minute_limit_cannot_exceed_hour_limit(self, make_connector):
        with pytest.raises(InvalidConfigError):
            make_connector(rate_limit_per_min=100, rate_limit_per_hour=50)

    def test_duplicate_name(self, make_connector):
        make_connector(name="okta")
        with pytest.raises(DuplicateRecordError):
            make_connector(name="okta")

    def test_validate_config_reports_problems(self, engine):
        problems = engine.registry.validate_config("NOT_A_TYPE", {"version": "1.0"}, {"fields": "email"})
        assert len(problems) == 3

    def test_unknown_connector(self, engine):
        with pytest.raises(NotFoundError):
            engine.registry.get("missing")


class TestTemplates:
    SCHEMA = {
        "type": "object",
        "required": ["version", "base_url"],
        "properties": {"base_url": {"type": "string", "pattern": "^https://"}},
    }

    def test_register_from_template_merges_overrides(self, engine):
        tpl = engine.registry.add_template("okta-default", ConnectorType.IDENTITY_PROVIDER, "memory",
                                           {"version": "2.1.0", "base_url": "https://okta.test"},
                                           validation_schema=self.SCHEMA)
        c = engine.registry.register_from_template("okta-default", "okta-prod", {"base_url": "https://prod.okta.test"})
        assert c.config == {"version": "2.1.0", "base_url": "https://prod.okta.test"}
        assert c.template_id == tpl.id
        assert engine.registry.templates.get(tpl.id).usage_count == 1

    def test_template_schema_rejects_config(self, engine):
        engine.registry.add_template("okta-strict", ConnectorType.IDENTITY_PROVIDER, "memory",
                                     {"version": "2.1.0", "base_url": "https://okta.test"},
                                     validation_schema=self.SCHEMA)
        with pytest.raises(InvalidConfigError) as exc:
            engine.registry.register_from_template("okta-strict", "okta-bad", {"base_url": "http://plain"})
        assert "base_url" in exc.value.errors[0]

    def test_invalid_json_schema_refused(self, engine):
        with pytest.raises(InvalidConfigError):
            engine.registry.add_template("broken", ConnectorType.HRIS, "memory", {"version": "1.0.0"},
                                         validation_schema={"type": 12})


class TestHealthAndStatus:
    def test_health_metric_only_on_change(self, engine, make_connector, storage, clock):
        c = make_connector()
        engine.registry.update_health(c.id, HealthStatus.HEALTHY)
        clock.advance(30)
        again = engine.registry.update_health(c.id, HealthStatus.HEALTHY)
        assert again.last_health_check == clock.now
        samples = storage.repo(ConnectorMetric).list(ConnectorMetric.metric_name == "health_status")
        assert len(samples) == 1
        assert samples[0].dimensions == {"status": "HEALTHY", "previous": "UNKNOWN"}

    def test_health_never_changes_status(self, engine, make_connector):
        c = make_connector()
        updated = engine.registry.update_health(c.id, HealthStatus.UNHEALTHY)
        assert updated.status == ConnectorStatus.ACTIVE

    def test_deprecated_is_terminal(self, engine, make_connector):
        c = make_connector()
        dep = engine.registry.deprecate(c.id, "vendor sunset", actor="ops")
        assert dep.status == ConnectorStatus.DEPRECATED
        assert dep.sync_enabled is False
        with pytest.raises(InvalidTransitionError):
            engine.registry.set_status(c.id, ConnectorStatus.ACTIVE, "undo")

    def test_status_change_needs_reason(self, engine, make_connector):
        c = make_connector()
        with pytest.raises(InvalidConfigError):
            engine.registry.set_status(c.id, ConnectorStatus.MAINTENANCE, "")


class TestScheduling:
    def test_list_due_and_mark_synced(self, engine, make_connector, clock):
        due = make_connector()
        make_connector(sync_enabled=False)
        assert [c.id for c in engine.registry.list_due(clock.now)] == [due.id]
        synced = engine.registry.mark_synced(due.id, clock.now)
        assert (synced.next_sync - synced.last_sync).total_seconds() == 600
        assert engine.registry.list_due(clock.now) == []


class TestDelete:
    def test_delete_unreferenced(self, engine, make_connector):
        c = make_connector()
        engine.registry.delete(c.id)
        with pytest.raises(NotFoundError):
            engine.registry.get(c.id)

    def test_delete_refused_with_jobs(self, engine, make_connector):
        c = make_connector()
        engine.orchestrator.trigger(c.id)
        with pytest.raises(ReferentialIntegrityError):
            engine.registry.delete(c.id)
