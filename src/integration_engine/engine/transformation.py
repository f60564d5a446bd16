"""Field mapping from connector records onto canonical target fields.

Rule selection is deterministic: for each target field the enabled rule with the highest
priority wins, then the most recently updated, then the lowest id.
"""
from __future__ import annotations
import logging
import re
import statistics
from datetime import datetime, date, timezone
from typing import Any, Callable, Dict, Iterable, Optional
from pydantic import ValidationError
from prometheus_client import Counter
from integration_engine.clock import Clock, utcnow
from integration_engine.errors import TransformationValidationError, InvalidConfigError, DuplicateRecordError, NotFoundError
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import TransformType
from integration_engine.models.tables import TransformationRule
from integration_engine.validation.schemas import FieldValidationRules

logger = logging.getLogger(__name__)

TRANSFORM_APPLIED = Counter('integration_transform_applied_total', 'Transformation rule applications', ['type', 'result'])

_MISSING = object()
_EPOCH = datetime(1970, 1, 1)
_SEMVER_PARTS = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+]([0-9A-Za-z.-]+))?")
_TRUE = {"true", "1", "yes", "y", "on", "t"}
_FALSE = {"false", "0", "no", "n", "off", "f", ""}


def get_path(record: Dict[str, Any], path: str, default: Any = _MISSING) -> Any:
    """Dotted lookup into nested dicts ("profile.email")."""
    cur: Any = record
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def rule_sort_key(rule: TransformationRule):
    age = ((rule.updated_at or _EPOCH) - _EPOCH).total_seconds()
    return (-rule.priority, -age, rule.id)


def select_rules(rules: Iterable[TransformationRule]) -> Dict[str, TransformationRule]:
    """Winning rule per target field."""
    winners: Dict[str, TransformationRule] = {}
    for rule in sorted(rules, key=rule_sort_key):
        winners.setdefault(rule.target_field, rule)
    return winners


# Format conversion helpers

def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"cannot interpret {value!r} as boolean")


def to_semver(value: Any) -> str:
    s = str(value).strip().lstrip("vV")
    m = _SEMVER_PARTS.match(s)
    if not m:
        raise ValueError(f"cannot interpret {value!r} as a version")
    major, minor, patch, pre = m.groups()
    out = f"{int(major)}.{int(minor or 0)}.{int(patch or 0)}"
    return f"{out}-{pre}" if pre else out


def to_datetime(value: Any, fmt: Optional[str] = None) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    s = str(value).strip()
    if fmt:
        return datetime.strptime(s, fmt)
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def format_convert(value: Any, cfg: Dict[str, Any]) -> Any:
    out = value
    if cfg.get("trim") and isinstance(out, str):
        out = out.strip()
    fmt = cfg.get("format")
    if fmt in ("integer", "int"):
        out = int(float(out)) if isinstance(out, str) and "." in out else int(out)
    elif fmt in ("float", "number"):
        out = float(out)
    elif fmt in ("boolean", "bool"):
        out = to_bool(out)
    elif fmt == "string":
        out = "" if out is None else str(out)
    elif fmt in ("semantic_version", "semver"):
        out = to_semver(out)
    elif fmt == "date":
        out = to_datetime(out, cfg.get("input_format")).date().isoformat()
    elif fmt == "datetime":
        out = to_datetime(out, cfg.get("input_format")).isoformat()
    elif fmt is not None:
        raise ValueError(f"unknown format {fmt}")
    case = cfg.get("case")
    if case and isinstance(out, str):
        if case in ("lower", "lowercase"):
            out = out.lower()
        elif case in ("upper", "uppercase"):
            out = out.upper()
        elif case == "title":
            out = out.title()
        else:
            raise ValueError(f"unknown case {case}")
    rng = cfg.get("range")
    if rng is not None:
        lo, hi = float(rng[0]), float(rng[1])
        if hi <= lo:
            raise ValueError(f"invalid range {rng}")
        num = min(hi, max(lo, float(out)))
        norm = cfg.get("normalize")
        if norm == "unit":
            num = (num - lo) / (hi - lo)
        elif norm == "score":
            num = (num - lo) / (hi - lo) * 100.0
        out = num
    return out


def aggregate(values: Any, op: str, cfg: Dict[str, Any]) -> Any:
    if values is None:
        values = []
    if not isinstance(values, (list, tuple)):
        values = [values]
    vals = [v for v in values if v is not None]
    if op == "count":
        return len(vals)
    if op == "join":
        return str(cfg.get("separator", ",")).join(str(v) for v in vals)
    if op == "distinct":
        seen: list = []
        for v in vals:
            if v not in seen:
                seen.append(v)
        return seen
    if not vals:
        raise ValueError(f"{op} of empty input")
    if op == "first":
        return vals[0]
    if op == "last":
        return vals[-1]
    nums = [float(v) for v in vals]
    if op == "sum":
        return sum(nums)
    if op == "avg":
        return statistics.fmean(nums)
    if op == "min":
        return min(nums)
    if op == "max":
        return max(nums)
    raise ValueError(f"unknown aggregation {op}")


_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}


def check_rules(value: Any, rules: FieldValidationRules) -> Optional[str]:
    """Return the first violated rule as a message, or None."""
    if value is None:
        return "required" if rules.required else None
    if rules.type and not _TYPE_CHECKS[rules.type](value):
        return f"expected {rules.type}, got {type(value).__name__}"
    if rules.pattern is not None and not re.fullmatch(rules.pattern, str(value)):
        return f"does not match {rules.pattern}"
    if rules.min is not None or rules.max is not None:
        try:
            num = float(value)
        except (TypeError, ValueError):
            return "not numeric"
        if rules.min is not None and num < rules.min:
            return f"below minimum {rules.min}"
        if rules.max is not None and num > rules.max:
            return f"above maximum {rules.max}"
    if rules.min_length is not None or rules.max_length is not None:
        try:
            n = len(value)
        except TypeError:
            return "has no length"
        if rules.min_length is not None and n < rules.min_length:
            return f"shorter than {rules.min_length}"
        if rules.max_length is not None and n > rules.max_length:
            return f"longer than {rules.max_length}"
    if rules.allowed is not None and value not in rules.allowed:
        return "not an allowed value"
    return None


class TransformationEngine:
    def __init__(self, storage: Storage, registry=None, clock: Clock = utcnow):
        self.storage = storage
        self.registry = registry
        self.clock = clock
        self.rules = storage.repo(TransformationRule)
        self._functions: Dict[str, Callable[..., Any]] = {}
        self._enrichers: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {}

    def register_function(self, name: str, fn: Callable[..., Any]):
        self._functions[name] = fn

    def register_enrichment(self, name: str, fn: Callable[[Any, Dict[str, Any]], Any]):
        self._enrichers[name] = fn

    # Rule management

    def add_rule(self, source_connector_id: str, source_field: str, target_field: str,
                 transform_type: TransformType = TransformType.DIRECT, transform_config: Dict[str, Any] | None = None,
                 validation_rules: Dict[str, Any] | None = None, default_value: Any = None, priority: int = 0,
                 enabled: bool = True, name: str | None = None) -> TransformationRule:
        if self.registry is not None:
            connector = self.registry.get(source_connector_id)
            declared = (connector.capabilities or {}).get("fields") or []
            if declared and source_field.split(".")[0] not in declared:
                raise InvalidConfigError(f"{source_field} is not a field of connector {connector.name}", [source_field])
        if validation_rules is not None:
            try:
                FieldValidationRules.model_validate(validation_rules)
            except ValidationError as ve:
                raise InvalidConfigError("invalid validation rules", [e["msg"] for e in ve.errors()]) from ve
        self._check_config(TransformType(transform_type), transform_config or {})
        existing = self.rules.find_one(
            TransformationRule.source_connector_id == source_connector_id,
            TransformationRule.source_field == source_field,
            TransformationRule.target_field == target_field,
        )
        if existing is not None:
            raise DuplicateRecordError(f"rule {source_field}->{target_field} already exists for {source_connector_id}")
        now = self.clock()
        return self.rules.add(TransformationRule(
            name=name,
            source_connector_id=source_connector_id,
            source_field=source_field,
            target_field=target_field,
            transform_type=TransformType(transform_type),
            transform_config=transform_config or {},
            validation_rules=validation_rules,
            default_value=default_value,
            enabled=enabled,
            priority=priority,
            created_at=now,
            updated_at=now,
        ))

    def _check_config(self, ttype: TransformType, cfg: Dict[str, Any]):
        if ttype == TransformType.AGGREGATION and cfg.get("op") not in ("sum", "avg", "min", "max", "count", "join", "first", "last", "distinct"):
            raise InvalidConfigError("aggregation requires op", [f"op: {cfg.get('op')!r}"])
        if ttype == TransformType.ENRICHMENT and "lookup" not in cfg and "provider" not in cfg:
            raise InvalidConfigError("enrichment requires lookup or provider")
        if ttype == TransformType.CUSTOM and not cfg.get("function"):
            raise InvalidConfigError("custom transform requires function")

    def update_rule(self, rule_id: int, **changes: Any) -> TransformationRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"transformation rule {rule_id} not found")
        if "validation_rules" in changes and changes["validation_rules"] is not None:
            FieldValidationRules.model_validate(changes["validation_rules"])
        if "transform_type" in changes or "transform_config" in changes:
            self._check_config(TransformType(changes.get("transform_type", rule.transform_type)),
                               changes.get("transform_config", rule.transform_config) or {})
        return self.rules.update(rule_id, **changes, updated_at=self.clock())

    def rules_for(self, source_connector_id: str, source_field: str | None = None) -> list[TransformationRule]:
        criteria = [TransformationRule.source_connector_id == source_connector_id, TransformationRule.enabled.is_(True)]
        if source_field is not None:
            criteria.append(TransformationRule.source_field == source_field)
        return self.rules.list(*criteria)

    # Execution

    def apply(self, source_connector_id: str, source_field: str, value: Any,
              record: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """Transform one source value into every target field mapped from it."""
        out: Dict[str, Any] = {}
        for target, rule in select_rules(self.rules_for(source_connector_id, source_field)).items():
            out[target] = self.execute(rule, value, record or {source_field: value})
        return out

    def transform_record(self, source_connector_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for target, rule in select_rules(self.rules_for(source_connector_id)).items():
            value = get_path(record, rule.source_field)
            if value is _MISSING:
                required = bool((rule.validation_rules or {}).get("required"))
                if not required and rule.transform_type != TransformType.AGGREGATION:
                    if rule.default_value is not None:
                        out[target] = rule.default_value
                    continue
                value = None
            out[target] = self.execute(rule, value, record)
        return out

    def execute(self, rule: TransformationRule, value: Any, record: Dict[str, Any]) -> Any:
        rules = FieldValidationRules.model_validate(rule.validation_rules or {})
        try:
            if value is None and rules.required:
                raise ValueError("required")
            result = self._run(rule, value, record)
            problem = check_rules(result, rules) if result is not None or rules.required else None
            if problem:
                raise ValueError(problem)
        except Exception as e:
            # includes whatever a registered function or enricher raises
            self._count(rule, ok=False)
            TRANSFORM_APPLIED.labels(rule.transform_type.value, "error").inc()
            if not rules.fatal and rule.default_value is not None:
                logger.info("transform fell back to default", extra={"rule_id": rule.id, "reason": str(e) or type(e).__name__})
                return rule.default_value
            raise TransformationValidationError(rule.id, value, str(e) or type(e).__name__, fatal=rules.fatal) from e
        self._count(rule, ok=True)
        TRANSFORM_APPLIED.labels(rule.transform_type.value, "ok").inc()
        return result

    def _run(self, rule: TransformationRule, value: Any, record: Dict[str, Any]) -> Any:
        cfg = rule.transform_config or {}
        ttype = rule.transform_type
        if ttype in (TransformType.DIRECT, TransformType.VALIDATION):
            return value
        if ttype == TransformType.FORMAT_CONVERSION:
            return None if value is None else format_convert(value, cfg)
        if ttype == TransformType.ENRICHMENT:
            if "provider" in cfg:
                fn = self._enrichers.get(cfg["provider"])
                if fn is None:
                    raise KeyError(f"unknown enrichment provider {cfg['provider']}")
                return fn(value, record)
            table = cfg.get("lookup") or {}
            key = str(value)
            if key in table:
                return table[key]
            missing = cfg.get("on_missing", "keep")
            if missing == "error":
                raise KeyError(f"no lookup entry for {key}")
            return None if missing == "null" else value
        if ttype == TransformType.AGGREGATION:
            if cfg.get("fields"):
                value = [v for v in (get_path(record, f) for f in cfg["fields"]) if v is not _MISSING]
            return aggregate(value, cfg["op"], cfg)
        if ttype == TransformType.CUSTOM:
            fn = self._functions.get(cfg["function"])
            if fn is None:
                raise KeyError(f"unknown custom function {cfg['function']}")
            return fn(value, record=record, **(cfg.get("args") or {}))
        raise ValueError(f"unsupported transform type {ttype}")

    def _count(self, rule: TransformationRule, ok: bool):
        # counters are bumped in SQL so concurrent workers don't lose updates
        if ok:
            self.rules.update_where(
                TransformationRule.id == rule.id,
                success_count=TransformationRule.success_count + 1,
                last_applied=self.clock(),
            )
        else:
            self.rules.update_where(TransformationRule.id == rule.id, error_count=TransformationRule.error_count + 1)
