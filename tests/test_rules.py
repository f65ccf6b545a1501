"""Tests for alert rule loading and matching."""
import pytest
import yaml

from alerts.rules_manager import RulesManager, rule_matches
from config import DEFAULT_RULES_PATH
from models.alerts import AlertRule
from models.enums import RuleKind, Severity
from utils.errors import ConfigError


def _write_rules(tmp_path, rules):
    path = tmp_path / "rules.yaml"
    path.write_text(yaml.safe_dump({"rules": rules}))
    return path


def test_bundled_rules_load():
    rm = RulesManager(DEFAULT_RULES_PATH)
    ids = {r.id for r in rm.get_all_rules()}
    assert {"disk_used_high", "database_growth", "blocking_present", "index_fragmented"} <= ids
    disk = rm.get_rule("disk_used_high")
    assert disk.kind == RuleKind.PERCENT_OF_BASELINE
    assert disk.min_consecutive_breaches == 3
    assert disk.severity == Severity.HIGH
    growth = rm.get_rule("database_growth")
    assert growth.rate_per_seconds == 86400


def test_defaults_applied(tmp_path):
    path = _write_rules(tmp_path, [{"id": "r1", "metric": "m", "operator": ">", "threshold": 1}])
    rm = RulesManager(path, defaults={"default_min_consecutive_breaches": 4})
    rule = rm.get_rule("r1")
    assert rule.min_consecutive_breaches == 4
    assert rule.min_consecutive_recoveries == 1
    assert rule.severity == Severity.MEDIUM
    assert rule.name == "r1"


def test_invalid_operator_rejects_file(tmp_path):
    path = _write_rules(tmp_path, [
        {"id": "bad", "metric": "m", "operator": "=>", "threshold": 1},
        {"id": "good", "metric": "m", "operator": "<", "threshold": 1},
    ])
    with pytest.raises(ConfigError, match="invalid operator"):
        RulesManager(path)


def test_add_rule_rejects_invalid_operator():
    rm = RulesManager("/nonexistent/alert_rules.yaml")
    with pytest.raises(ConfigError):
        rm.add_rule(AlertRule(id="r", metric="m", operator="=>", threshold=1))
    assert rm.get_all_rules() == []


@pytest.mark.parametrize("rule", [
    {"id": "r", "metric": "m", "operator": ">", "threshold": 1, "severity": "URGENT"},
    {"id": "r", "metric": "m", "operator": ">", "threshold": 1, "kind": "median"},
    {"id": "r", "metric": "m", "operator": ">", "threshold": 1, "min_consecutive_breaches": 0},
    {"id": "r", "metric": "m", "operator": ">", "threshold": 1, "kind": "rate_over_window"},
    {"id": "r", "metric": "m", "operator": ">", "threshold": 1, "kind": "percent_of_baseline"},
    {"id": "r", "operator": ">", "threshold": 1},
    {"metric": "m", "operator": ">", "threshold": 1},
])
def test_invalid_rules_rejected(tmp_path, rule):
    with pytest.raises(ConfigError):
        RulesManager(_write_rules(tmp_path, [rule]))


def test_duplicate_ids_rejected(tmp_path):
    rule = {"id": "r", "metric": "m", "operator": ">", "threshold": 1}
    with pytest.raises(ConfigError):
        RulesManager(_write_rules(tmp_path, [rule, rule]))


def test_missing_file_gives_no_rules(tmp_path):
    assert RulesManager(tmp_path / "missing.yaml").get_all_rules() == []


def test_add_rule_replaces_same_id(tmp_path):
    rm = RulesManager(tmp_path / "missing.yaml")
    rm.add_rule(AlertRule(id="x", metric="a", threshold=1))
    rm.add_rule(AlertRule(id="x", metric="b", threshold=2))
    assert [(r.id, r.metric) for r in rm.get_all_rules()] == [("x", "b")]


def test_rule_matches_patterns_and_tags(make_sample):
    rule = AlertRule(id="r", metric="disk.*", tag_filter={"volume": "C*"})
    assert rule_matches(rule, make_sample(1, volume="C:"))
    assert not rule_matches(rule, make_sample(1, volume="D:"))
    assert not rule_matches(rule, make_sample(1, metric="log.used_pct", volume="C:"))


def test_matching_rules_only_enabled(tmp_path, make_sample):
    rm = RulesManager(tmp_path / "missing.yaml")
    rm.add_rule(AlertRule(id="on", metric="disk.used_mb"))
    rm.add_rule(AlertRule(id="off", metric="disk.used_mb", enabled=False))
    assert [r.id for r in rm.matching_rules(make_sample(1))] == ["on"]
