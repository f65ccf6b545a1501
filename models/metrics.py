"""Dataclasses for metric sources, samples, and retention."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def tags_key(tags):
    """Canonical, order-independent string form of a tag mapping."""
    return json.dumps({str(k): str(v) for k, v in (tags or {}).items()}, sort_keys=True, separators=(",", ":"))


def ensure_utc(dt):
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class MetricMapping:
    """How one result column (or a name/value column pair) becomes samples.

    Fixed form: ``column`` holds the value, ``name`` is the metric name.
    Pivot form: ``name_column`` holds the metric name (optionally prefixed)
    and ``value_column`` the value, one metric per row.
    """
    name: str = ""
    column: str = ""
    unit: str = ""
    name_column: str = ""
    value_column: str = ""
    prefix: str = ""

    @property
    def is_pivot(self):
        return bool(self.name_column)

    @property
    def columns(self):
        if self.is_pivot:
            return (self.name_column, self.value_column)
        return (self.column,)


@dataclass(frozen=True)
class MetricSource:
    id: str = ""
    target: str = ""
    query: str = ""
    interval: float = 60.0
    timeout: float = 30.0
    tag_columns: tuple = ()
    static_tags: dict = field(default_factory=dict, hash=False, compare=False)
    metrics: tuple = ()
    enabled: bool = True
    description: str = ""


@dataclass(frozen=True)
class Sample:
    source_id: str
    metric_name: str
    value: float
    collected_at: datetime
    tags: dict = field(default_factory=dict, hash=False)
    unit: str = ""

    @property
    def tags_key(self):
        return tags_key(self.tags)

    @property
    def series_key(self):
        return (self.source_id, self.metric_name, self.tags_key)

    def to_dict(self):
        return {
            "source_id": self.source_id,
            "metric_name": self.metric_name,
            "tags": dict(self.tags),
            "value": self.value,
            "unit": self.unit,
            "collected_at": self.collected_at.isoformat(),
        }


@dataclass(frozen=True)
class CollectionResult:
    rows: list
    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0


@dataclass(frozen=True)
class RetentionPolicy:
    horizon: timedelta = timedelta(days=30)
    downsample_after: Optional[timedelta] = timedelta(days=7)
    downsample_bucket: timedelta = timedelta(hours=1)

    @classmethod
    def from_config(cls, cfg):
        cfg = cfg or {}
        after = cfg.get("downsample_after_days", 7)
        return cls(
            horizon=timedelta(days=float(cfg.get("horizon_days", 30))),
            downsample_after=timedelta(days=float(after)) if after else None,
            downsample_bucket=timedelta(seconds=float(cfg.get("downsample_bucket_seconds", 3600))),
        )


@dataclass(frozen=True)
class PruneResult:
    expired: int = 0
    downsampled: int = 0

    @property
    def total(self):
        return self.expired + self.downsampled
