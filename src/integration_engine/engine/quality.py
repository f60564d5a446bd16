"""Data quality checks over batches of records.

Score is the pass ratio. Status comes from per-severity thresholds:
score >= pass -> PASSED, score >= warn -> WARNING, else FAILED.
Only a FAILED CRITICAL check halts processing.
"""
from __future__ import annotations
import logging
import re
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from prometheus_client import Counter
from integration_engine.clock import Clock, utcnow
from integration_engine.config import get_settings
from integration_engine.errors import QualityCheckFailedError
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import QualityCheckType, QualityStatus, Severity
from integration_engine.models.tables import DataQualityCheck
from integration_engine.validation.schemas import QualityCheckDefinition, QualityRules
from integration_engine.engine.transformation import get_path, to_datetime

logger = logging.getLogger(__name__)

QUALITY_RUNS = Counter('integration_quality_checks_total', 'Quality check executions', ['check_type', 'status'])

# severity -> (pass threshold, warn threshold)
DEFAULT_THRESHOLDS: Dict[Severity, Tuple[float, float]] = {
    Severity.CRITICAL: (1.0, 1.0),
    Severity.HIGH: (0.99, 0.95),
    Severity.MEDIUM: (0.95, 0.80),
    Severity.LOW: (0.90, 0.50),
}

_MISSING = object()


def _empty(v: Any) -> bool:
    return v is None or v is _MISSING or (isinstance(v, (str, list, dict)) and len(v) == 0)


class QualityChecker:
    def __init__(self, storage: Storage, clock: Clock = utcnow,
                 thresholds: Dict[Severity, Tuple[float, float]] | None = None, max_issues: int | None = None):
        self.storage = storage
        self.clock = clock
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.max_issues = max_issues if max_issues is not None else get_settings().quality_max_issues
        self.results = storage.repo(DataQualityCheck)
        self._definitions: Dict[str, QualityCheckDefinition] = {}
        self._lock = threading.Lock()

    # Definitions

    def register(self, definition: QualityCheckDefinition | Dict[str, Any]) -> QualityCheckDefinition:
        d = definition if isinstance(definition, QualityCheckDefinition) else QualityCheckDefinition.model_validate(definition)
        with self._lock:
            self._definitions[d.name] = d
        return d

    def unregister(self, name: str):
        with self._lock:
            self._definitions.pop(name, None)

    def definitions_for(self, data_source: str) -> List[QualityCheckDefinition]:
        with self._lock:
            return [d for d in self._definitions.values() if d.enabled and d.data_source in (data_source, "*")]

    # Execution

    def status_for(self, score: float, severity: Severity, rules: QualityRules) -> QualityStatus:
        pass_t, warn_t = self.thresholds[severity]
        if rules.pass_threshold is not None:
            pass_t = rules.pass_threshold
        if rules.warn_threshold is not None:
            warn_t = min(rules.warn_threshold, pass_t)
        if score >= pass_t:
            return QualityStatus.PASSED
        if score >= warn_t:
            return QualityStatus.WARNING
        return QualityStatus.FAILED

    def run(self, definition: QualityCheckDefinition, records: List[Dict[str, Any]],
            correlation_id: str | None = None) -> DataQualityCheck:
        return self._run(definition, records, correlation_id)[0]

    def _run(self, definition: QualityCheckDefinition, records: List[Dict[str, Any]],
             correlation_id: str | None) -> Tuple[DataQualityCheck, set]:
        issues: List[Dict[str, Any]] = []
        failed_idx = self._evaluate(definition, records, issues)
        checked = len(records)
        failed = len(failed_idx)
        passed = checked - failed
        score = 1.0 if checked == 0 else passed / checked
        status = self.status_for(score, definition.severity, definition.rules)
        row = self.results.add(DataQualityCheck(
            check_name=definition.name,
            check_type=definition.check_type,
            data_source=definition.data_source,
            field_name=definition.field_name,
            rules=definition.rules.model_dump(exclude_none=True),
            status=status,
            score=round(score, 6),
            records_checked=checked,
            records_passed=passed,
            records_failed=failed,
            issues=issues[: self.max_issues],
            severity=definition.severity,
            correlation_id=correlation_id,
            executed_at=self.clock(),
        ))
        QUALITY_RUNS.labels(definition.check_type.value, status.value).inc()
        if status != QualityStatus.PASSED:
            logger.warning("quality check not passed", extra={"check": definition.name, "status": status.value, "score": row.score})
        return row, failed_idx

    def validate_batch(self, data_source: str, records: List[Dict[str, Any]],
                       correlation_id: str | None = None) -> Tuple[List[DataQualityCheck], set]:
        """Run every registered check for a source; returns result rows and the indexes of failing records."""
        rows: List[DataQualityCheck] = []
        failed: set = set()
        for d in self.definitions_for(data_source):
            row, idx = self._run(d, records, correlation_id)
            rows.append(row)
            failed |= idx
        return rows, failed

    def check_event(self, data_source: str, records: List[Dict[str, Any]],
                    correlation_id: str | None = None) -> List[DataQualityCheck]:
        """Run every registered check for a source. Raises on a failed CRITICAL check, after recording all results."""
        rows, _ = self.validate_batch(data_source, records, correlation_id)
        for row in rows:
            if row.severity == Severity.CRITICAL and row.status == QualityStatus.FAILED:
                raise QualityCheckFailedError(row.check_name, row.score, row.issues)
        return rows

    def history(self, check_name: str, limit: int = 50) -> List[DataQualityCheck]:
        return self.results.list(DataQualityCheck.check_name == check_name,
                                 order_by=(DataQualityCheck.executed_at.desc(), DataQualityCheck.id.desc()), limit=limit)

    # Rule evaluation per check type

    def _evaluate(self, d: QualityCheckDefinition, records: List[Dict[str, Any]], issues: List[Dict[str, Any]]) -> set:
        failed: set = set()

        def fail(i: int, field: Optional[str], reason: str, value: Any = None):
            failed.add(i)
            if len(issues) < self.max_issues:
                issues.append({"index": i, "field": field, "reason": reason,
                               "value": None if value is _MISSING else repr(value)[:200]})

        r = d.rules
        ctype = d.check_type
        if ctype == QualityCheckType.UNIQUENESS:
            keys = r.key_fields or ([d.field_name] if d.field_name else [])
            seen: Dict[tuple, int] = {}
            for i, rec in enumerate(records):
                key = tuple(repr(get_path(rec, k, None)) for k in keys)
                if key in seen:
                    fail(i, ",".join(keys), f"duplicate of record {seen[key]}", key)
                else:
                    seen[key] = i
            return failed

        now = self.clock()
        pattern = re.compile(r.pattern) if r.pattern else None
        for i, rec in enumerate(records):
            if ctype == QualityCheckType.COMPLETENESS:
                fields = r.required_fields or ([d.field_name] if d.field_name else [])
                for f in fields:
                    if _empty(get_path(rec, f, _MISSING)):
                        fail(i, f, "missing")
                        break
            elif ctype == QualityCheckType.VALIDITY:
                v = get_path(rec, d.field_name, _MISSING) if d.field_name else _MISSING
                reason = self._invalid(v, r, pattern)
                if reason:
                    fail(i, d.field_name, reason, v)
            elif ctype == QualityCheckType.ACCURACY:
                for f, expected in (r.expected or {}).items():
                    v = get_path(rec, f, _MISSING)
                    if v != expected:
                        fail(i, f, f"expected {expected!r}", v)
                        break
                else:
                    if d.field_name and (r.min is not None or r.max is not None):
                        v = get_path(rec, d.field_name, _MISSING)
                        reason = self._out_of_range(v, r)
                        if reason:
                            fail(i, d.field_name, reason, v)
            elif ctype == QualityCheckType.CONSISTENCY:
                values = [get_path(rec, f, _MISSING) for f in r.equal_fields]
                if values and any(v != values[0] for v in values[1:]):
                    fail(i, ",".join(r.equal_fields), "fields disagree", values)
            elif ctype == QualityCheckType.TIMELINESS:
                f = r.timestamp_field or d.field_name
                v = get_path(rec, f, _MISSING) if f else _MISSING
                if _empty(v):
                    fail(i, f, "missing timestamp")
                    continue
                try:
                    ts = to_datetime(v)
                except (TypeError, ValueError):
                    fail(i, f, "unparseable timestamp", v)
                    continue
                if ts.tzinfo is not None:
                    ts = ts.replace(tzinfo=None) - (ts.utcoffset() or timedelta(0))
                if r.max_age_seconds is not None and (now - ts).total_seconds() > r.max_age_seconds:
                    fail(i, f, f"older than {r.max_age_seconds}s", v)
        return failed

    @staticmethod
    def _out_of_range(v: Any, r: QualityRules) -> Optional[str]:
        try:
            num = float(v)
        except (TypeError, ValueError):
            return "not numeric"
        if r.min is not None and num < r.min:
            return f"below {r.min}"
        if r.max is not None and num > r.max:
            return f"above {r.max}"
        return None

    def _invalid(self, v: Any, r: QualityRules, pattern) -> Optional[str]:
        if _empty(v):
            return "missing"
        if r.type:
            ok = {
                "string": isinstance(v, str),
                "integer": isinstance(v, int) and not isinstance(v, bool),
                "number": isinstance(v, (int, float)) and not isinstance(v, bool),
                "boolean": isinstance(v, bool),
            }.get(r.type, True)
            if not ok:
                return f"expected {r.type}"
        if pattern is not None and not pattern.fullmatch(str(v)):
            return "pattern mismatch"
        if r.min is not None or r.max is not None:
            reason = self._out_of_range(v, r)
            if reason:
                return reason
        if r.allowed is not None and v not in r.allowed:
            return "not allowed"
        return None
