"""Enums for severity, alert status, rule kinds, and store outcomes."""
from enum import Enum


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def parse(cls, value):
        """Case-insensitive lookup; accepts an existing Severity."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None

    @property
    def rank(self):
        return SEVERITY_ORDER[self]


SEVERITY_ORDER = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    CLEAR = "CLEAR"
    FIRING = "FIRING"


class RuleKind(str, Enum):
    ABSOLUTE = "absolute"
    PERCENT_OF_BASELINE = "percent_of_baseline"
    RATE_OVER_WINDOW = "rate_over_window"


class AppendOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    DROPPED = "dropped"
