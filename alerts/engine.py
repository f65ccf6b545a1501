"""Threshold evaluation with per-series alert state and hysteresis."""
import logging
import threading
from datetime import timedelta

from alerts.rules_manager import rule_matches
from models.alerts import AlertEvent, AlertState
from models.enums import AlertStatus, RuleKind
from models.metrics import tags_key
from utils.formatters import format_tags

logger = logging.getLogger("dbwatch.alerts.engine")

OPERATOR_MAP = {
    "<": lambda v, t: v < t,
    ">": lambda v, t: v > t,
    "<=": lambda v, t: v <= t,
    ">=": lambda v, t: v >= t,
    "==": lambda v, t: v == t,
    "!=": lambda v, t: v != t,
}

SEVERITY_ICONS = {"CRITICAL": "!!!", "HIGH": "!!", "MEDIUM": "!", "LOW": "i"}


class ThresholdEvaluator:
    """Evaluates matching rules for each new sample and emits AlertEvents.

    One AlertState exists per (rule id, tag set) and is created on the first
    sample a rule matches. Evaluation of a single state is serialized by its
    own lock, so different series evaluate concurrently.

    While a state is FIRING, every further breach yields a non-transition
    reminder event; the dispatcher decides whether it is worth a notification.
    """

    def __init__(self, rules_manager, store, persist_state=False):
        self.rules_manager = rules_manager
        self.store = store
        self.persist_state = persist_state
        self._states = {}
        self._key_locks = {}
        self._lock = threading.Lock()
        if persist_state:
            for state in store.load_alert_states():
                self._states[state.key] = state
            if self._states:
                logger.info(f"Restored {len(self._states)} alert states")

    def _state_for(self, rule, tags):
        key = (rule.id, tags_key(tags))
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = AlertState(rule_id=rule.id, tags=dict(tags))
                self._states[key] = state
            lock = self._key_locks.setdefault(key, threading.Lock())
        return state, lock

    # --- observed values ---

    def observe(self, rule, sample):
        """Value the rule compares against its threshold, or None to skip."""
        if rule.kind == RuleKind.ABSOLUTE:
            return sample.value
        if rule.kind == RuleKind.PERCENT_OF_BASELINE:
            return self._percent_of_baseline(rule, sample)
        if rule.kind == RuleKind.RATE_OVER_WINDOW:
            return self._rate_over_window(rule, sample)
        return None

    def _percent_of_baseline(self, rule, sample):
        baseline = rule.baseline_value
        if baseline is None:
            baseline_sample = self.store.latest(rule.baseline_metric, sample.tags, until=sample.collected_at)
            if baseline_sample is None:
                logger.debug(f"{rule.id}: no {rule.baseline_metric} baseline for {format_tags(sample.tags)}")
                return None
            baseline = baseline_sample.value
        if not baseline:
            return None
        return 100.0 * sample.value / baseline

    def _rate_over_window(self, rule, sample):
        end = sample.collected_at
        start = end - timedelta(seconds=rule.window_seconds)
        history = self.store.query(sample.metric_name, sample.tags, start=start, end=end)
        if len(history) < 2:
            return None
        first, last = history[0], history[-1]
        elapsed = (last.collected_at - first.collected_at).total_seconds()
        if elapsed <= 0:
            return None
        return (last.value - first.value) / elapsed * rule.rate_per_seconds

    # --- evaluation ---

    def evaluate(self, sample):
        """Evaluate every matching rule against one sample."""
        events = []
        for rule in self.rules_manager.matching_rules(sample):
            state, lock = self._state_for(rule, sample.tags)
            with lock:
                if state.last_evaluated_at and sample.collected_at < state.last_evaluated_at:
                    continue
                observed = self.observe(rule, sample)
                if observed is None:
                    continue
                event = self._apply(rule, state, observed, sample.collected_at)
                if self.persist_state:
                    self.store.save_alert_state(state)
            if event is not None:
                events.append(event)
        return events

    def evaluate_batch(self, samples):
        events = []
        for sample in samples:
            events.extend(self.evaluate(sample))
        return events

    def _apply(self, rule, state, observed, at):
        func = OPERATOR_MAP.get(rule.operator)
        if func is None:
            return None
        breach = func(observed, rule.threshold)
        state.last_evaluated_at = at
        state.last_value = observed

        if breach:
            state.breach_streak += 1
            state.recovery_streak = 0
            if state.is_firing:
                return self._event(rule, state, observed, at, transition=False)
            if state.breach_streak >= rule.min_consecutive_breaches:
                state.status = AlertStatus.FIRING
                state.first_fired_at = at
                logger.info(f"FIRING {rule.id} {format_tags(state.tags)} value={observed:.2f}")
                return self._event(rule, state, observed, at, transition=True)
            return None

        state.recovery_streak += 1
        state.breach_streak = 0
        if state.is_firing and state.recovery_streak >= rule.min_consecutive_recoveries:
            state.status = AlertStatus.CLEAR
            logger.info(f"CLEAR {rule.id} {format_tags(state.tags)} value={observed:.2f}")
            event = self._event(rule, state, observed, at, transition=True)
            state.first_fired_at = None
            return event
        return None

    def _event(self, rule, state, observed, at, transition):
        if state.is_firing:
            message = f"{rule.name}: {rule.condition} (observed {observed:.2f}) [{format_tags(state.tags)}]"
            if rule.description:
                message += f" | {rule.description}"
        else:
            message = f"RESOLVED {rule.name}: observed {observed:.2f} [{format_tags(state.tags)}]"
        return AlertEvent(
            state=state.snapshot(),
            severity=rule.severity,
            rule_name=rule.name,
            value=observed,
            threshold=rule.threshold,
            message=message,
            transition=transition,
            triggered_at=at,
        )

    # --- inspection ---

    def get_states(self, status=None):
        with self._lock:
            states = [s.snapshot() for s in self._states.values()]
        if status is not None:
            states = [s for s in states if s.status == AlertStatus(status)]
        return sorted(states, key=lambda s: s.key)

    def test_rules(self, samples):
        """Evaluate all rules against ``samples`` without touching alert state."""
        results = []
        for rule in self.rules_manager.get_all_rules():
            for sample in samples:
                if not rule_matches(rule, sample):
                    continue
                observed = self.observe(rule, sample)
                func = OPERATOR_MAP.get(rule.operator)
                would_breach = func(observed, rule.threshold) if observed is not None and func else False
                results.append({
                    "rule_id": rule.id,
                    "name": rule.name,
                    "condition": rule.condition,
                    "tags": dict(sample.tags),
                    "observed": observed,
                    "would_breach": would_breach,
                    "severity": rule.severity.value,
                    "enabled": rule.enabled,
                })
        return results

    @staticmethod
    def format_event_summary(events):
        """Format alert events for display."""
        if not events:
            return "All clear - no alert transitions."
        lines = []
        for e in events:
            icon = SEVERITY_ICONS.get(e.severity.value, "?")
            lines.append(f"[{icon}] [{e.severity.value}] [{e.status.value}] {e.message}")
        return "\n".join(lines)
