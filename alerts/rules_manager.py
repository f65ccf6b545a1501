"""Alert rules loading and management."""
import logging
from fnmatch import fnmatchcase
from pathlib import Path

import yaml

from models.alerts import AlertRule
from models.enums import RuleKind, Severity
from utils.errors import ConfigError

logger = logging.getLogger("dbwatch.alerts.rules")

VALID_OPERATORS = {"<", ">", "<=", ">=", "==", "!="}


class RulesManager:
    def __init__(self, rules_path="config/alert_rules.yaml", defaults=None):
        self.rules_path = Path(rules_path)
        self.defaults = defaults or {}
        self.rules = []
        self.load()

    def load(self):
        if not self.rules_path.exists():
            logger.warning(f"Alert rules file not found: {self.rules_path}")
            return
        with open(self.rules_path) as f:
            data = yaml.safe_load(f) or {}
        self.rules = self.parse_rules(data.get("rules", []))
        logger.info(f"Loaded {len(self.rules)} rules")

    def parse_rules(self, raw_rules):
        rules = []
        seen = set()
        default_breaches = int(self.defaults.get("default_min_consecutive_breaches", 1))
        default_recoveries = int(self.defaults.get("default_min_consecutive_recoveries", 1))
        for r in raw_rules:
            rule_id = r.get("id")
            if not rule_id:
                raise ConfigError(f"Alert rule without id: {r}")
            if rule_id in seen:
                raise ConfigError(f"Duplicate alert rule id: {rule_id}")
            seen.add(rule_id)

            for field in ("metric", "threshold"):
                if r.get(field) is None:
                    raise ConfigError(f"Rule {rule_id}: missing {field}")
            if r.get("operator") not in VALID_OPERATORS:
                raise ConfigError(f"Rule {rule_id}: invalid operator {r.get('operator')!r}")
            try:
                kind = RuleKind(r.get("kind", RuleKind.ABSOLUTE.value))
                severity = Severity.parse(r.get("severity", Severity.MEDIUM))
            except ValueError as e:
                raise ConfigError(f"Rule {rule_id}: {e}") from e

            baseline_value = r.get("baseline_value")
            rule = AlertRule(
                id=rule_id,
                name=r.get("name", rule_id),
                metric=r["metric"],
                kind=kind,
                operator=r["operator"],
                threshold=float(r["threshold"]),
                window_seconds=float(r.get("window_seconds", 0)),
                rate_per_seconds=float(r.get("rate_per_seconds", 1)),
                baseline_metric=r.get("baseline_metric", ""),
                baseline_value=float(baseline_value) if baseline_value is not None else None,
                tag_filter={str(k): str(v) for k, v in (r.get("tags") or {}).items()},
                min_consecutive_breaches=int(r.get("min_consecutive_breaches", default_breaches)),
                min_consecutive_recoveries=int(r.get("min_consecutive_recoveries", default_recoveries)),
                severity=severity,
                enabled=r.get("enabled", True),
                description=r.get("description", ""),
            )
            self._validate(rule)
            rules.append(rule)
        return rules

    @staticmethod
    def _validate(rule):
        if rule.operator not in VALID_OPERATORS:
            raise ConfigError(f"Rule {rule.id}: invalid operator {rule.operator!r}")
        if rule.min_consecutive_breaches < 1 or rule.min_consecutive_recoveries < 1:
            raise ConfigError(f"Rule {rule.id}: hysteresis counts must be >= 1")
        if rule.kind == RuleKind.RATE_OVER_WINDOW:
            if rule.window_seconds <= 0:
                raise ConfigError(f"Rule {rule.id}: rate_over_window needs window_seconds > 0")
            if rule.rate_per_seconds <= 0:
                raise ConfigError(f"Rule {rule.id}: rate_per_seconds must be > 0")
        if rule.kind == RuleKind.PERCENT_OF_BASELINE and not rule.baseline_metric and rule.baseline_value is None:
            raise ConfigError(f"Rule {rule.id}: percent_of_baseline needs baseline_metric or baseline_value")

    def add_rule(self, rule):
        """Register a rule built in code, replacing any rule with the same id."""
        self._validate(rule)
        self.rules = [r for r in self.rules if r.id != rule.id] + [rule]

    def get_enabled_rules(self):
        return [r for r in self.rules if r.enabled]

    def get_rule(self, rule_id):
        for r in self.rules:
            if r.id == rule_id:
                return r
        return None

    def get_all_rules(self):
        return self.rules

    def matching_rules(self, sample):
        """Enabled rules whose metric pattern and tag filter match ``sample``."""
        return [r for r in self.get_enabled_rules() if rule_matches(r, sample)]


def rule_matches(rule, sample):
    if not fnmatchcase(sample.metric_name, rule.metric):
        return False
    for key, pattern in rule.tag_filter.items():
        if not fnmatchcase(sample.tags.get(key, ""), pattern):
            return False
    return True
