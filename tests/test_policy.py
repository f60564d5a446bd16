import pytest

from integration_engine.errors import DuplicateRecordError, InvalidConfigError, PolicyViolationError
from integration_engine.models.enums import EnforcementMode, PolicyOutcome


def _policy(name, mode=EnforcementMode.BLOCKING, priority=0, scope=None, conditions=None, **kw):
    return {"name": name, "enforcement_mode": mode, "priority": priority,
            "scope": scope or {}, "rules": {"conditions": conditions or []}, **kw}


class TestDefinitions:
    def test_duplicate_name_rejected(self, engine):
        engine.policy.add_policy(_policy("pii"))
        with pytest.raises(DuplicateRecordError):
            engine.policy.add_policy(_policy("pii"))

    def test_bad_regex_rejected(self, engine):
        with pytest.raises(InvalidConfigError):
            engine.policy.add_policy(_policy("re", conditions=[{"field": "email", "op": "regex", "value": "("}]))

    def test_invalid_definition(self, engine):
        with pytest.raises(InvalidConfigError):
            engine.policy.add_policy({"name": ""})


class TestEvaluate:
    def test_no_policies_allows(self, engine):
        assert engine.policy.evaluate("event.process", {}).outcome == PolicyOutcome.ALLOW

    def test_scope_filters_actions_and_sources(self, engine):
        p = engine.policy
        p.add_policy(_policy("only-crm", scope={"sources": ["crm"], "actions": ["event.process"]}))
        assert p.evaluate("event.process", {"source": "hr"}).allowed
        assert p.evaluate("sync.run", {"source": "crm"}).allowed
        assert p.evaluate("event.process", {"source": "crm"}).outcome == PolicyOutcome.BLOCK

    def test_conditions(self, engine):
        p = engine.policy
        p.add_policy(_policy("external-email", conditions=[
            {"field": "payload.email", "op": "regex", "value": r"@external\.test$"},
            {"field": "payload.age", "op": "gte", "value": 18},
        ]))
        assert p.evaluate("x", {"payload": {"email": "a@external.test", "age": 30}}).outcome == PolicyOutcome.BLOCK
        assert p.evaluate("x", {"payload": {"email": "a@external.test", "age": 12}}).allowed
        assert p.evaluate("x", {"payload": {"email": "a@corp.test", "age": 30}}).allowed

    def test_any_match(self, engine):
        p = engine.policy
        p.add_policy({"name": "any", "enforcement_mode": EnforcementMode.BLOCKING, "rules": {"match": "any", "conditions": [
            {"field": "country", "op": "in", "value": ["XX", "YY"]},
            {"field": "ssn", "op": "exists"},
        ]}})
        assert not p.evaluate("x", {"ssn": "123"}).allowed
        assert not p.evaluate("x", {"country": "XX"}).allowed
        assert p.evaluate("x", {"country": "NZ"}).allowed

    def test_most_restrictive_wins_within_tier(self, engine):
        p = engine.policy
        p.add_policy(_policy("advise", EnforcementMode.ADVISORY, priority=10))
        p.add_policy(_policy("quarantine", EnforcementMode.QUARANTINE, priority=10))
        p.add_policy(_policy("block", EnforcementMode.BLOCKING, priority=10))
        decision = p.evaluate("x", {})
        assert decision.outcome == PolicyOutcome.BLOCK
        assert decision.policy_name == "block"
        assert decision.matched == ["advise", "quarantine", "block"]
        assert decision.advisories == ["advise"]

    def test_higher_priority_tier_decides(self, engine):
        p = engine.policy
        p.add_policy(_policy("low-block", EnforcementMode.BLOCKING, priority=1))
        p.add_policy(_policy("high-advise", EnforcementMode.ADVISORY, priority=50))
        decision = p.evaluate("x", {})
        assert decision.outcome == PolicyOutcome.ALLOW
        assert decision.matched == ["high-advise"]

    def test_unmatched_tier_falls_through(self, engine):
        p = engine.policy
        p.add_policy(_policy("high", priority=50, scope={"sources": ["crm"]}))
        p.add_policy(_policy("low", EnforcementMode.QUARANTINE, priority=1))
        assert p.evaluate("x", {"source": "hr"}).policy_name == "low"

    def test_disabled_policy_ignored(self, engine):
        p = engine.policy
        policy = p.add_policy(_policy("block"))
        p.set_enabled(policy.id, False)
        assert p.evaluate("x", {}).allowed


class TestEnforce:
    def test_block_raises(self, engine):
        policy = engine.policy.add_policy(_policy("block", violation_action="reject"))
        with pytest.raises(PolicyViolationError) as exc:
            engine.policy.enforce("event.process", {})
        assert exc.value.policy_id == policy.id

    def test_quarantine_returned(self, engine):
        engine.policy.add_policy(_policy("hold", EnforcementMode.QUARANTINE))
        assert engine.policy.enforce("event.process", {}).outcome == PolicyOutcome.QUARANTINE
