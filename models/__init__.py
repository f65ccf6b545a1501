"""Data models."""
from models.enums import Severity, AlertStatus, RuleKind, AppendOutcome
from models.metrics import MetricMapping, MetricSource, Sample, CollectionResult, RetentionPolicy, PruneResult, tags_key
from models.alerts import AlertRule, AlertState, AlertEvent
