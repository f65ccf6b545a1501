"""Dataclasses for alert rules, per-series alert state, and alert events."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from models.enums import AlertStatus, RuleKind, Severity
from models.metrics import tags_key


@dataclass(frozen=True)
class AlertRule:
    id: str = ""
    name: str = ""
    metric: str = ""
    kind: RuleKind = RuleKind.ABSOLUTE
    operator: str = ">"
    threshold: float = 0.0
    window_seconds: float = 0.0
    rate_per_seconds: float = 1.0
    baseline_metric: str = ""
    baseline_value: Optional[float] = None
    tag_filter: dict = field(default_factory=dict, hash=False, compare=False)
    min_consecutive_breaches: int = 1
    min_consecutive_recoveries: int = 1
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    description: str = ""

    @property
    def condition(self):
        if self.kind == RuleKind.PERCENT_OF_BASELINE:
            return f"{self.metric} % of {self.baseline_metric or self.baseline_value} {self.operator} {self.threshold}"
        if self.kind == RuleKind.RATE_OVER_WINDOW:
            return f"rate({self.metric}, {int(self.window_seconds)}s) {self.operator} {self.threshold}"
        return f"{self.metric} {self.operator} {self.threshold}"


@dataclass
class AlertState:
    rule_id: str
    tags: dict = field(default_factory=dict)
    status: AlertStatus = AlertStatus.CLEAR
    first_fired_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None
    breach_streak: int = 0
    recovery_streak: int = 0
    last_value: Optional[float] = None

    @property
    def key(self):
        return (self.rule_id, tags_key(self.tags))

    @property
    def is_firing(self):
        return self.status == AlertStatus.FIRING

    def snapshot(self):
        """Independent copy safe to hand to other threads."""
        return replace(self, tags=dict(self.tags))


@dataclass(frozen=True)
class AlertEvent:
    state: AlertState
    severity: Severity = Severity.MEDIUM
    rule_name: str = ""
    value: Optional[float] = None
    threshold: Optional[float] = None
    message: str = ""
    transition: bool = True
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def rule_id(self):
        return self.state.rule_id

    @property
    def status(self):
        return self.state.status

    @property
    def tags(self):
        return self.state.tags

    @property
    def key(self):
        return self.state.key

    def to_dict(self):
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "status": self.status.value,
            "severity": self.severity.value,
            "tags": dict(self.tags),
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
            "transition": self.transition,
            "triggered_at": self.triggered_at.isoformat(),
            "first_fired_at": self.state.first_fired_at.isoformat() if self.state.first_fired_at else None,
        }
