import pytest

from integration_engine.engine.transformation import aggregate, format_convert, to_semver
from integration_engine.errors import DuplicateRecordError, InvalidConfigError, TransformationValidationError
from integration_engine.models.enums import TransformType


@pytest.fixture()
def source(make_connector):
    return make_connector(capabilities={"fields": ["email", "upn", "dept", "age", "scores", "active", "profile"]})


class TestHelpers:
    def test_format_convert_case_and_trim(self):
        assert format_convert("  Alice@EXAMPLE.com ", {"trim": True, "case": "lower"}) == "alice@example.com"

    def test_format_convert_range_normalisation(self):
        assert format_convert(150, {"range": [0, 100], "normalize": "unit"}) == 1.0
        assert format_convert("25", {"format": "number", "range": [0, 50], "normalize": "score"}) == 50.0

    def test_semver(self):
        assert to_semver("v2.1") == "2.1.0"
        assert to_semver("3.0.1-beta.2") == "3.0.1-beta.2"
        with pytest.raises(ValueError):
            to_semver("latest")

    def test_aggregations(self):
        assert aggregate([1, 2, 3, None], "sum", {}) == 6.0
        assert aggregate([2, 4], "avg", {}) == 3.0
        assert aggregate(["a", "b", "a"], "distinct", {}) == ["a", "b"]
        assert aggregate(["x", "y"], "join", {"separator": "|"}) == "x|y"
        with pytest.raises(ValueError):
            aggregate([], "max", {})


class TestRules:
    def test_add_rule_checks_declared_fields(self, engine, source):
        with pytest.raises(InvalidConfigError):
            engine.transformation.add_rule(source.id, "shoe_size", "size")

    def test_add_rule_unique_key(self, engine, source):
        engine.transformation.add_rule(source.id, "email", "email")
        with pytest.raises(DuplicateRecordError):
            engine.transformation.add_rule(source.id, "email", "email")

    def test_aggregation_requires_op(self, engine, source):
        with pytest.raises(InvalidConfigError):
            engine.transformation.add_rule(source.id, "scores", "total", TransformType.AGGREGATION, {})

    def test_highest_priority_wins(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "email", "login", priority=1)
        t.add_rule(source.id, "upn", "login", priority=5)
        assert t.transform_record(source.id, {"email": "a@x.test", "upn": "alice@corp"}) == {"login": "alice@corp"}

    def test_tie_broken_by_most_recent_update(self, engine, source, clock):
        t = engine.transformation
        t.add_rule(source.id, "email", "login")
        clock.advance(60)
        t.add_rule(source.id, "upn", "login")
        assert t.transform_record(source.id, {"email": "a@x.test", "upn": "alice@corp"}) == {"login": "alice@corp"}

    def test_full_tie_broken_by_lowest_id(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "email", "login")
        t.add_rule(source.id, "upn", "login")
        for _ in range(3):
            assert t.transform_record(source.id, {"email": "a@x.test", "upn": "alice@corp"}) == {"login": "a@x.test"}

    def test_disabled_rules_ignored(self, engine, source):
        t = engine.transformation
        rule = t.add_rule(source.id, "upn", "login", priority=9)
        t.add_rule(source.id, "email", "login")
        t.update_rule(rule.id, enabled=False)
        assert t.apply(source.id, "upn", "alice@corp") == {}


class TestExecution:
    def test_format_conversion_counts_success(self, engine, source, clock):
        t = engine.transformation
        rule = t.add_rule(source.id, "email", "email", TransformType.FORMAT_CONVERSION, {"trim": True, "case": "lower"})
        assert t.apply(source.id, "email", " Bob@Example.COM") == {"email": "bob@example.com"}
        stored = t.rules.get(rule.id)
        assert stored.success_count == 1
        assert stored.last_applied == clock.now

    def test_enrichment_lookup(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "dept", "cost_center", TransformType.ENRICHMENT,
                   {"lookup": {"eng": "CC-100", "ops": "CC-200"}, "on_missing": "null"})
        assert t.apply(source.id, "dept", "eng") == {"cost_center": "CC-100"}
        assert t.apply(source.id, "dept", "legal") == {"cost_center": None}

    def test_aggregation_over_fields(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "scores", "score_total", TransformType.AGGREGATION, {"op": "sum"})
        assert t.transform_record(source.id, {"scores": [1, 2, 3.5]}) == {"score_total": 6.5}

    def test_custom_function(self, engine, source):
        t = engine.transformation
        t.register_function("initials", lambda value, record, sep="": sep.join(p[0] for p in value.split()))
        t.add_rule(source.id, "profile.name", "initials", TransformType.CUSTOM, {"function": "initials", "args": {"sep": "."}})
        assert t.transform_record(source.id, {"profile": {"name": "Ada Lovelace"}}) == {"initials": "A.L"}

    def test_custom_function_crash_counts_as_rule_failure(self, engine, source):
        t = engine.transformation

        def broken(value, record):
            raise RuntimeError("upstream lookup down")

        t.register_function("broken", broken)
        rule = t.add_rule(source.id, "dept", "dept_code", TransformType.CUSTOM, {"function": "broken"})
        with pytest.raises(TransformationValidationError) as exc:
            t.apply(source.id, "dept", "eng")
        assert "upstream lookup down" in str(exc.value)
        assert t.rules.get(rule.id).error_count == 1

    def test_enrichment_crash_falls_back_to_default(self, engine, source):
        t = engine.transformation

        def directory(value, record):
            raise ConnectionError()

        t.register_enrichment("directory", directory)
        rule = t.add_rule(source.id, "dept", "cost_center", TransformType.ENRICHMENT, {"provider": "directory"},
                          default_value="CC-000")
        assert t.apply(source.id, "dept", "eng") == {"cost_center": "CC-000"}
        assert t.rules.get(rule.id).error_count == 1

    def test_validation_failure_raises_with_rule_and_value(self, engine, source):
        t = engine.transformation
        rule = t.add_rule(source.id, "age", "age", TransformType.VALIDATION, validation_rules={"type": "integer", "min": 0, "max": 130})
        with pytest.raises(TransformationValidationError) as exc:
            t.apply(source.id, "age", 200)
        assert exc.value.rule_id == rule.id
        assert exc.value.value == 200
        assert t.rules.get(rule.id).error_count == 1

    def test_failure_falls_back_to_default(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "active", "active", TransformType.FORMAT_CONVERSION, {"format": "boolean"}, default_value=False)
        assert t.apply(source.id, "active", "maybe") == {"active": False}

    def test_fatal_rule_ignores_default(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "active", "active", TransformType.FORMAT_CONVERSION, {"format": "boolean"},
                   validation_rules={"fatal": True}, default_value=False)
        with pytest.raises(TransformationValidationError) as exc:
            t.apply(source.id, "active", "maybe")
        assert exc.value.fatal is True

    def test_missing_required_field(self, engine, source):
        t = engine.transformation
        t.add_rule(source.id, "email", "email", validation_rules={"required": True})
        with pytest.raises(TransformationValidationError):
            t.transform_record(source.id, {"upn": "x"})
