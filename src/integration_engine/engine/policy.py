"""Governance policies evaluated against actions before they take effect.

Policies are walked in descending priority. The first priority tier with any match
decides; inside that tier policies are checked by id and the most restrictive
enforcement wins. ADVISORY matches are logged and allowed.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Dict, List, Optional
from pydantic import ValidationError
from prometheus_client import Counter
from integration_engine.clock import Clock, utcnow
from integration_engine.errors import PolicyViolationError, InvalidConfigError, DuplicateRecordError, NotFoundError
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import PolicyOutcome, ENFORCEMENT_OUTCOME, OUTCOME_RESTRICTIVENESS
from integration_engine.models.tables import IntegrationPolicy
from integration_engine.validation.schemas import PolicyDefinition, PolicyScope, PolicyRules, PolicyCondition
from integration_engine.engine.transformation import get_path

logger = logging.getLogger(__name__)

POLICY_DECISIONS = Counter('integration_policy_decisions_total', 'Policy evaluation outcomes', ['outcome'])

_MISSING = object()


@dataclass
class PolicyDecision:
    outcome: PolicyOutcome
    policy_id: Optional[int] = None
    policy_name: Optional[str] = None
    violation_action: Optional[str] = None
    matched: List[str] = field(default_factory=list)
    advisories: List[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.outcome == PolicyOutcome.ALLOW

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "policy_id": self.policy_id,
            "policy": self.policy_name,
            "violation_action": self.violation_action,
            "matched": self.matched,
            "advisories": self.advisories,
        }


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "exists":
        return actual is not _MISSING and actual is not None
    if op == "missing":
        return actual is _MISSING or actual is None
    if actual is _MISSING:
        return op in ("ne", "not_in")
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in (expected or [])
    if op == "not_in":
        return actual not in (expected or [])
    if op == "contains":
        try:
            return expected in actual
        except TypeError:
            return False
    if op == "regex":
        return actual is not None and re.search(str(expected), str(actual)) is not None
    try:
        a, e = float(actual), float(expected)
    except (TypeError, ValueError):
        return False
    return {"gt": a > e, "gte": a >= e, "lt": a < e, "lte": a <= e}[op]


def scope_matches(scope: PolicyScope, action: str, context: Dict[str, Any]) -> bool:
    checks = (
        (scope.components, context.get("component")),
        (scope.actions, action),
        (scope.connectors, context.get("connector_id")),
        (scope.event_types, context.get("event_type")),
        (scope.sources, context.get("source")),
    )
    return all(not allowed or value in allowed for allowed, value in checks)


def rules_match(rules: PolicyRules, context: Dict[str, Any]) -> bool:
    if not rules.conditions:
        return True
    results = (_compare(c.op, get_path(context, c.field, _MISSING), c.value) for c in rules.conditions)
    return all(results) if rules.match == "all" else any(results)


class PolicyEngine:
    def __init__(self, storage: Storage, clock: Clock = utcnow):
        self.storage = storage
        self.clock = clock
        self.policies = storage.repo(IntegrationPolicy)

    def add_policy(self, definition: PolicyDefinition | Dict[str, Any]) -> IntegrationPolicy:
        try:
            d = definition if isinstance(definition, PolicyDefinition) else PolicyDefinition.model_validate(definition)
        except ValidationError as ve:
            raise InvalidConfigError("invalid policy", [e["msg"] for e in ve.errors()]) from ve
        for c in d.rules.conditions:
            if c.op == "regex":
                try:
                    re.compile(str(c.value))
                except re.error as e:
                    raise InvalidConfigError(f"policy {d.name}: bad regex", [str(e)]) from e
        if self.policies.find_one(IntegrationPolicy.name == d.name) is not None:
            raise DuplicateRecordError(f"policy already exists: {d.name}")
        now = self.clock()
        return self.policies.add(IntegrationPolicy(
            name=d.name,
            description=d.description,
            policy_type=d.policy_type,
            scope=d.scope.model_dump(),
            rules=d.rules.model_dump(),
            conditions=None,
            actions=d.actions,
            enabled=d.enabled,
            priority=d.priority,
            enforcement_mode=d.enforcement_mode,
            violation_action=d.violation_action,
            created_at=now,
            updated_at=now,
        ))

    def set_enabled(self, policy_id: int, enabled: bool) -> IntegrationPolicy:
        if self.policies.get(policy_id) is None:
            raise NotFoundError(f"policy {policy_id} not found")
        return self.policies.update(policy_id, enabled=enabled, updated_at=self.clock())

    def active_policies(self) -> List[IntegrationPolicy]:
        return self.policies.list(IntegrationPolicy.enabled.is_(True),
                                  order_by=(IntegrationPolicy.priority.desc(), IntegrationPolicy.id))

    def evaluate(self, action: str, context: Dict[str, Any]) -> PolicyDecision:
        decision = PolicyDecision(PolicyOutcome.ALLOW)
        for _priority, tier in groupby(self.active_policies(), key=lambda p: p.priority):
            winner: Optional[IntegrationPolicy] = None
            for policy in tier:
                if not self._matches(policy, action, context):
                    continue
                decision.matched.append(policy.name)
                outcome = ENFORCEMENT_OUTCOME[policy.enforcement_mode]
                if outcome == PolicyOutcome.ALLOW:
                    decision.advisories.append(policy.name)
                if winner is None or OUTCOME_RESTRICTIVENESS[outcome] > OUTCOME_RESTRICTIVENESS[ENFORCEMENT_OUTCOME[winner.enforcement_mode]]:
                    winner = policy
            if winner is not None:
                decision.outcome = ENFORCEMENT_OUTCOME[winner.enforcement_mode]
                decision.policy_id = winner.id
                decision.policy_name = winner.name
                decision.violation_action = winner.violation_action
                break
        for name in decision.advisories:
            logger.info("advisory policy matched", extra={"policy": name, "action": action})
        POLICY_DECISIONS.labels(decision.outcome.value).inc()
        return decision

    def enforce(self, action: str, context: Dict[str, Any]) -> PolicyDecision:
        """Like evaluate, but a BLOCK raises PolicyViolationError."""
        decision = self.evaluate(action, context)
        if decision.outcome == PolicyOutcome.BLOCK:
            logger.warning("policy blocked action", extra={"policy": decision.policy_name, "action": action})
            raise PolicyViolationError(decision.policy_id, decision.policy_name, decision.violation_action)
        return decision

    @staticmethod
    def _matches(policy: IntegrationPolicy, action: str, context: Dict[str, Any]) -> bool:
        scope = PolicyScope.model_validate(policy.scope or {})
        if not scope_matches(scope, action, context):
            return False
        rules = PolicyRules.model_validate(policy.rules or {})
        if policy.conditions:
            # the conditions column holds extra conditions in the same shape
            extra = [PolicyCondition.model_validate(c) for c in policy.conditions.get("conditions", [])]
            rules = PolicyRules(match=rules.match, conditions=rules.conditions + extra)
        return rules_match(rules, context)
