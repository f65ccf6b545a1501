"""DatabaseMonitor - Central orchestrator for collecting, storing, and alerting."""
import logging
import threading
from datetime import datetime, timezone

from models.alerts import AlertRule
from models.enums import AppendOutcome, RuleKind, Severity
from models.metrics import RetentionPolicy, Sample
from utils.counters import Counters
from utils.errors import Cancelled, CollectionError, SchemaMismatch

logger = logging.getLogger("dbwatch.monitor")

HEALTH_SOURCE_ID = "dbwatch"
FAILURES_METRIC = "dbwatch.consecutive_failures"
SCHEMA_METRIC = "dbwatch.schema_mismatch"


def health_rules(meta_alert_after=3):
    """Built-in rules that alert on the collectors themselves."""
    return [
        AlertRule(
            id="collector_health",
            name="Collector failing",
            metric=FAILURES_METRIC,
            kind=RuleKind.ABSOLUTE,
            operator=">=",
            threshold=float(meta_alert_after),
            severity=Severity.HIGH,
            description="Metric source has failed repeatedly; check target connectivity",
        ),
        AlertRule(
            id="collector_schema_mismatch",
            name="Collector schema mismatch",
            metric=SCHEMA_METRIC,
            kind=RuleKind.ABSOLUTE,
            operator=">",
            threshold=0.0,
            severity=Severity.HIGH,
            description="Query no longer matches the target's schema; source suspended",
        ),
    ]


class RunReport:
    """Outcome of one source run."""

    def __init__(self, source_id):
        self.source_id = source_id
        self.samples = []
        self.outcomes = {}
        self.events = []
        self.error = None
        self.duration_ms = 0

    @property
    def ok(self):
        return self.error is None

    def count(self, outcome):
        return self.outcomes.get(outcome, 0)


class DatabaseMonitor:
    def __init__(self, collector, normalizer, store, evaluator, dispatcher,
                 sources=None, config=None, counters=None, scheduler=None):
        self.collector = collector
        self.normalizer = normalizer
        self.store = store
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.sources = sources
        self.config = config or {}
        self.counters = counters or Counters()
        self.scheduler = scheduler
        self.meta_alert_after = int(self.config.get("agent", {}).get("meta_alert_after", 3))
        self._failures = {}
        self._lock = threading.Lock()

    def install_health_rules(self, rules_manager):
        for rule in health_rules(self.meta_alert_after):
            rules_manager.add_rule(rule)

    def run_source(self, source, cancel=None):
        """Collect one source and push its samples through store, rules, and sinks."""
        report = RunReport(source.id)
        try:
            result = self.collector.collect(source, cancel=cancel)
        except Cancelled as e:
            report.error = e
            logger.info(f"{source.id}: run interrupted by shutdown")
            return report
        except CollectionError as e:
            report.error = e
            self._record_failure(source, e)
            return report

        report.duration_ms = result.duration_ms
        report.samples = self.normalizer.normalize(source, result.rows, result.collected_at)
        inserted = []
        for sample in report.samples:
            outcome = self.store.append(sample)
            report.outcomes[outcome] = report.outcomes.get(outcome, 0) + 1
            if outcome == AppendOutcome.INSERTED:
                inserted.append(sample)

        report.events = self.evaluator.evaluate_batch(inserted)
        self.dispatcher.dispatch_all(report.events)
        self._record_success(source, result.collected_at)
        logger.info(
            f"{source.id}: {len(report.samples)} samples "
            f"({report.count(AppendOutcome.INSERTED)} new), "
            f"{len(report.events)} events in {result.duration_ms}ms"
        )
        return report

    def collect_now(self, source_id, cancel=None):
        """Synchronous run of one configured source, for the CLI."""
        source = self.sources.get_source(source_id) if self.sources else None
        if source is None:
            raise KeyError(source_id)
        return self.run_source(source, cancel=cancel)

    def run_all(self, cancel=None):
        sources = self.sources.get_enabled_sources() if self.sources else []
        return [self.run_source(s, cancel=cancel) for s in sources]

    def prune(self, now=None):
        policy = RetentionPolicy.from_config(self.config.get("retention", {}))
        return self.store.prune(policy, now=now)

    def failure_count(self, source_id):
        with self._lock:
            return self._failures.get(source_id, 0)

    # --- self-observability ---

    def _record_failure(self, source, error):
        with self._lock:
            failures = self._failures.get(source.id, 0) + 1
            self._failures[source.id] = failures
        self.counters.incr("collection_failures", label=source.id)

        mismatch = isinstance(error, SchemaMismatch)
        if mismatch:
            logger.error(f"{source.id}: schema mismatch: {error}")
            if self.scheduler is not None:
                self.scheduler.suspend(source.id)
        else:
            logger.warning(f"{source.id}: collection failed ({failures} consecutive): {error}")
        self._emit_health(source, failures, mismatch)

    def _record_success(self, source, at):
        with self._lock:
            previous = self._failures.pop(source.id, 0)
        if previous:
            logger.info(f"{source.id}: recovered after {previous} failures")
            self._emit_health(source, 0, False, at=at)

    def _emit_health(self, source, failures, mismatch, at=None):
        at = at or datetime.now(timezone.utc)
        tags = {"source": source.id}
        samples = [
            Sample(HEALTH_SOURCE_ID, FAILURES_METRIC, float(failures), at, tags),
            Sample(HEALTH_SOURCE_ID, SCHEMA_METRIC, 1.0 if mismatch else 0.0, at, tags),
        ]
        inserted = [s for s in samples if self.store.append(s) == AppendOutcome.INSERTED]
        self.dispatcher.dispatch_all(self.evaluator.evaluate_batch(inserted))
