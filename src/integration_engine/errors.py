"""Exception taxonomy shared by all engine components."""
from __future__ import annotations
from typing import Any


class IntegrationError(Exception):
    """Base exception for engine failures."""

    def details(self) -> dict[str, Any]:
        return {"type": self.__class__.__name__, "message": str(self)}


class NotFoundError(IntegrationError):
    pass


class InvalidConfigError(IntegrationError):
    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def details(self) -> dict[str, Any]:
        return {**super().details(), "errors": self.errors}


class DuplicateRecordError(IntegrationError):
    pass


class ReferentialIntegrityError(IntegrationError):
    pass


class InvalidTransitionError(IntegrationError):
    def __init__(self, entity: str, current: Any, target: Any):
        super().__init__(f"{entity}: illegal transition {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


# Adapter errors

class AdapterError(IntegrationError):
    pass


class TransientAdapterError(AdapterError):
    """Network / timeout / rate-limit style failures that are safe to retry."""


class FatalAdapterError(AdapterError):
    """Adapter failures that retrying cannot fix (auth, bad config)."""


# Validation errors

class ValidationFailure(IntegrationError):
    """Halts processing of a record; never retried."""


class TransformationValidationError(ValidationFailure):
    def __init__(self, rule_id: int | None, value: Any, reason: str, fatal: bool = False):
        super().__init__(f"rule {rule_id}: {reason} (value={value!r})")
        self.rule_id = rule_id
        self.value = value
        self.reason = reason
        self.fatal = fatal

    def details(self) -> dict[str, Any]:
        return {**super().details(), "rule_id": self.rule_id, "value": repr(self.value), "reason": self.reason}


class QualityCheckFailedError(ValidationFailure):
    def __init__(self, check_name: str, score: float, issues: list[dict] | None = None):
        super().__init__(f"critical quality check {check_name} failed (score={score:.3f})")
        self.check_name = check_name
        self.score = score
        self.issues = issues or []

    def details(self) -> dict[str, Any]:
        return {**super().details(), "check": self.check_name, "score": self.score, "issues": self.issues[:10]}


class IdentityConflictError(IntegrationError):
    pass


class PolicyViolationError(IntegrationError):
    def __init__(self, policy_id: int, policy_name: str, violation_action: str | None):
        super().__init__(f"policy {policy_name} blocked action ({violation_action or 'BLOCK'})")
        self.policy_id = policy_id
        self.policy_name = policy_name
        self.violation_action = violation_action

    def details(self) -> dict[str, Any]:
        return {
            **super().details(),
            "policy_id": self.policy_id,
            "policy": self.policy_name,
            "violation_action": self.violation_action,
        }


class JobCancelledError(IntegrationError):
    pass


class JobTimeoutError(IntegrationError):
    pass
