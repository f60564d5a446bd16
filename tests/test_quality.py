from datetime import timedelta

import pytest

from integration_engine.errors import QualityCheckFailedError
from integration_engine.models.enums import QualityCheckType, QualityStatus, Severity


def _definition(check_type, severity=Severity.MEDIUM, source="hr", **kw):
    return {"name": f"{check_type.value.lower()}-{severity.value.lower()}", "check_type": check_type,
            "data_source": source, "severity": severity, **kw}


class TestRun:
    def test_completeness_score_and_issues(self, engine):
        q = engine.quality
        d = q.register(_definition(QualityCheckType.COMPLETENESS, rules={"required_fields": ["email", "name"]}))
        rows = [{"email": "a@x", "name": "A"}, {"email": "", "name": "B"}, {"email": "c@x", "name": "C"},
                {"email": "d@x", "name": "D"}]
        result = q.run(d, rows, correlation_id="corr-1")
        assert (result.records_checked, result.records_passed, result.records_failed) == (4, 3, 1)
        assert result.score == 0.75
        assert result.status == QualityStatus.FAILED
        assert (result.issues[0]["index"], result.issues[0]["field"], result.issues[0]["reason"]) == (1, "email", "missing")
        assert result.correlation_id == "corr-1"

    def test_severity_thresholds(self, engine):
        q = engine.quality
        low = q.register(_definition(QualityCheckType.VALIDITY, Severity.LOW, field_name="age", rules={"min": 0, "max": 120}))
        rows = [{"age": 30}] * 7 + [{"age": -1}] * 3
        assert q.run(low, rows).status == QualityStatus.WARNING
        high = q.register(_definition(QualityCheckType.VALIDITY, Severity.HIGH, field_name="age", rules={"min": 0, "max": 120}))
        assert q.run(high, rows).status == QualityStatus.FAILED

    def test_thresholds_overridable_per_definition(self, engine):
        q = engine.quality
        d = q.register(_definition(QualityCheckType.VALIDITY, field_name="age", rules={"min": 0, "pass_threshold": 0.5}))
        assert q.run(d, [{"age": 1}, {"age": -1}]).status == QualityStatus.PASSED

    def test_uniqueness(self, engine):
        q = engine.quality
        d = q.register(_definition(QualityCheckType.UNIQUENESS, rules={"key_fields": ["employee_id"]}))
        result = q.run(d, [{"employee_id": 1}, {"employee_id": 2}, {"employee_id": 1}])
        assert result.records_failed == 1
        assert result.issues[0]["index"] == 2

    def test_consistency_and_accuracy(self, engine):
        q = engine.quality
        cons = q.register(_definition(QualityCheckType.CONSISTENCY, rules={"equal_fields": ["email", "login"]}))
        assert q.run(cons, [{"email": "a", "login": "a"}, {"email": "a", "login": "b"}]).records_failed == 1
        acc = q.register(_definition(QualityCheckType.ACCURACY, rules={"expected": {"country": "NZ"}}))
        assert q.run(acc, [{"country": "NZ"}, {"country": "AU"}]).records_failed == 1

    def test_timeliness(self, engine, clock):
        q = engine.quality
        d = q.register(_definition(QualityCheckType.TIMELINESS, rules={"timestamp_field": "updated", "max_age_seconds": 3600}))
        fresh = (clock.now - timedelta(minutes=5)).isoformat()
        stale = (clock.now - timedelta(hours=5)).isoformat() + "Z"
        result = q.run(d, [{"updated": fresh}, {"updated": stale}, {"updated": "yesterday"}])
        assert result.records_failed == 2

    def test_empty_batch_passes(self, engine):
        q = engine.quality
        d = q.register(_definition(QualityCheckType.COMPLETENESS, Severity.CRITICAL, rules={"required_fields": ["id"]}))
        assert q.run(d, []).status == QualityStatus.PASSED


class TestCheckEvent:
    def test_critical_failure_raises_after_recording(self, engine):
        q = engine.quality
        q.register(_definition(QualityCheckType.COMPLETENESS, Severity.CRITICAL, rules={"required_fields": ["id"]}))
        q.register(_definition(QualityCheckType.COMPLETENESS, Severity.LOW, rules={"required_fields": ["name"]}))
        with pytest.raises(QualityCheckFailedError) as exc:
            q.check_event("hr", [{"name": "x"}])
        assert exc.value.check_name == "completeness-critical"
        assert len(q.history("completeness-low")) == 1

    def test_non_critical_failure_is_recorded_only(self, engine):
        q = engine.quality
        q.register(_definition(QualityCheckType.COMPLETENESS, Severity.HIGH, rules={"required_fields": ["id"]}))
        rows = q.check_event("hr", [{"name": "x"}])
        assert rows[0].status == QualityStatus.FAILED

    def test_other_sources_unaffected(self, engine):
        q = engine.quality
        q.register(_definition(QualityCheckType.COMPLETENESS, Severity.CRITICAL, rules={"required_fields": ["id"]}))
        assert q.check_event("crm", [{"name": "x"}]) == []
