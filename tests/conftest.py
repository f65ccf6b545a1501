"""Shared test fixtures."""
import os
import sys
import threading
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.database import HistoryStore
from models.metrics import MetricMapping, MetricSource, Sample
from utils.counters import Counters
from datetime import datetime, timedelta, timezone

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeTarget:
    """Target returning canned rows; ``rows`` may be a list or a callable."""

    def __init__(self, name="primary", rows=None, error=None):
        self.name = name
        self.rows = rows if rows is not None else []
        self.error = error
        self.queries = []
        self.statements = []

    def execute(self, query, timeout=None):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.rows() if callable(self.rows) else [dict(r) for r in self.rows]

    def execute_statement(self, statement):
        self.statements.append(statement)

    def ping(self):
        self.execute("SELECT 1 AS ok")

    def close(self):
        pass


class BlockingTarget(FakeTarget):
    """Target whose queries hang until ``release`` is set."""

    def __init__(self, name="slow", rows=None):
        super().__init__(name, rows)
        self.release = threading.Event()

    def execute(self, query, timeout=None):
        self.queries.append(query)
        self.release.wait(10)
        return [dict(r) for r in self.rows]


@pytest.fixture
def counters():
    return Counters()


@pytest.fixture
def temp_store(counters):
    """Create a temporary history store for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    store = HistoryStore(db_path, counters=counters, backoff_base=0.0, backoff_max=0.0)
    store.connect()
    yield store
    store.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def make_sample():
    """Factory: make_sample(value, minutes=0, metric=..., **tags)."""
    def _make(value, minutes=0, metric="disk.used_mb", source_id="disk_usage", **tags):
        return Sample(
            source_id=source_id,
            metric_name=metric,
            value=float(value),
            collected_at=T0 + timedelta(minutes=minutes),
            tags=tags or {"target": "primary", "volume": "C:"},
            unit="MB",
        )
    return _make


@pytest.fixture
def disk_source():
    return MetricSource(
        id="disk_usage",
        target="primary",
        query="SELECT volume, total_mb, used_mb, free_mb FROM disk",
        interval=60,
        timeout=5,
        tag_columns=("volume",),
        metrics=(
            MetricMapping(name="disk.total_mb", column="total_mb", unit="MB"),
            MetricMapping(name="disk.used_mb", column="used_mb", unit="MB"),
            MetricMapping(name="disk.free_mb", column="free_mb", unit="MB"),
        ),
    )


def disk_rows(used, total=100.0, volume="C:"):
    return [{"volume": volume, "total_mb": total, "used_mb": used, "free_mb": total - used}]
