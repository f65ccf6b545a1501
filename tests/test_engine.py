"""Tests for the threshold evaluator."""
import pytest

from alerts.engine import ThresholdEvaluator
from alerts.rules_manager import RulesManager
from models.alerts import AlertRule
from models.enums import AlertStatus, RuleKind, Severity


def _rules(*rules):
    rm = RulesManager("/nonexistent/alert_rules.yaml")
    for r in rules:
        rm.add_rule(r)
    return rm


def _absolute(breaches=3, recoveries=2, **kw):
    return AlertRule(id="used_high", name="Used high", metric="disk.used_mb", operator=">",
                     threshold=80, min_consecutive_breaches=breaches,
                     min_consecutive_recoveries=recoveries, severity=Severity.HIGH, **kw)


def _feed(evaluator, make_sample, values, start=0):
    events = []
    for i, v in enumerate(values):
        events.extend(evaluator.evaluate(make_sample(v, minutes=start + i)))
    return events


class TestHysteresis:
    def test_fires_on_kth_consecutive_breach(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=3)), temp_store)
        assert _feed(ev, make_sample, [85, 85]) == []
        events = _feed(ev, make_sample, [85], start=2)
        assert len(events) == 1
        assert events[0].status == AlertStatus.FIRING
        assert events[0].transition is True
        assert events[0].severity == Severity.HIGH
        assert events[0].state.first_fired_at == make_sample(85, minutes=2).collected_at

    def test_interrupted_streak_does_not_fire(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=3)), temp_store)
        assert _feed(ev, make_sample, [85, 85, 70, 85, 85]) == []
        (state,) = ev.get_states()
        assert state.status == AlertStatus.CLEAR
        assert state.breach_streak == 2

    def test_clears_after_recovery_count(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=1, recoveries=2)), temp_store)
        assert len(_feed(ev, make_sample, [85])) == 1
        assert _feed(ev, make_sample, [70], start=1) == []
        events = _feed(ev, make_sample, [70], start=2)
        assert [e.status for e in events] == [AlertStatus.CLEAR]
        assert events[0].transition is True
        assert ev.get_states("CLEAR")[0].first_fired_at is None

    def test_breach_while_firing_is_a_reminder(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=1)), temp_store)
        events = _feed(ev, make_sample, [85, 90, 95])
        assert [e.transition for e in events] == [True, False, False]
        assert all(e.status == AlertStatus.FIRING for e in events)

    def test_states_are_per_tag_set(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=1)), temp_store)
        events = ev.evaluate(make_sample(85, volume="C:"))
        events += ev.evaluate(make_sample(50, volume="D:"))
        assert len(events) == 1
        states = {s.tags["volume"]: s.status for s in ev.get_states()}
        assert states == {"C:": AlertStatus.FIRING, "D:": AlertStatus.CLEAR}

    def test_older_sample_is_not_evaluated(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=1)), temp_store)
        ev.evaluate(make_sample(50, minutes=5))
        assert ev.evaluate(make_sample(99, minutes=1)) == []
        assert ev.get_states()[0].last_value == 50.0

    def test_disabled_rule_ignored(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(_absolute(breaches=1, enabled=False)), temp_store)
        assert ev.evaluate(make_sample(99)) == []
        assert ev.get_states() == []


class TestPercentOfBaseline:
    def _rule(self, **kw):
        return AlertRule(id="disk_pct", name="Disk %", metric="disk.used_mb",
                         kind=RuleKind.PERCENT_OF_BASELINE, operator=">", threshold=80, **kw)

    def test_uses_latest_baseline_sample(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(baseline_metric="disk.total_mb")), temp_store)
        temp_store.append(make_sample(200, metric="disk.total_mb"))
        events = ev.evaluate(make_sample(170))
        assert len(events) == 1
        assert events[0].value == pytest.approx(85.0)

    def test_fixed_baseline_value(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(baseline_value=1000)), temp_store)
        assert ev.evaluate(make_sample(700)) == []
        assert ev.get_states()[0].last_value == pytest.approx(70.0)

    def test_missing_baseline_skips(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(baseline_metric="disk.total_mb")), temp_store)
        assert ev.evaluate(make_sample(170)) == []
        state = ev.get_states()[0]
        assert state.breach_streak == 0 and state.recovery_streak == 0


class TestRateOverWindow:
    def _rule(self, threshold=50.0):
        return AlertRule(id="growth", name="Growth", metric="database.allocated_mb",
                         kind=RuleKind.RATE_OVER_WINDOW, operator=">", threshold=threshold,
                         window_seconds=7200, rate_per_seconds=3600)

    def _store(self, store, sample):
        store.append(sample)
        return sample

    def test_single_sample_never_transitions(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(threshold=-1e9)), temp_store)
        s = self._store(temp_store, make_sample(100, metric="database.allocated_mb"))
        assert ev.evaluate(s) == []
        state = ev.get_states()[0]
        assert state.status == AlertStatus.CLEAR
        assert state.breach_streak == 0 and state.recovery_streak == 0

    def test_no_samples_never_transitions(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(threshold=-1e9)), temp_store)
        # sample not written to the store: the window is empty
        assert ev.evaluate(make_sample(100, metric="database.allocated_mb")) == []

    def test_rate_is_scaled(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(threshold=50)), temp_store)
        self._store(temp_store, make_sample(100, minutes=0, metric="database.allocated_mb"))
        last = self._store(temp_store, make_sample(160, minutes=60, metric="database.allocated_mb"))
        events = ev.evaluate(last)
        assert len(events) == 1
        assert events[0].value == pytest.approx(60.0)

    def test_samples_outside_window_ignored(self, temp_store, make_sample):
        ev = ThresholdEvaluator(_rules(self._rule(threshold=50)), temp_store)
        self._store(temp_store, make_sample(0, minutes=0, metric="database.allocated_mb"))
        self._store(temp_store, make_sample(100, minutes=180, metric="database.allocated_mb"))
        last = self._store(temp_store, make_sample(110, minutes=240, metric="database.allocated_mb"))
        # window covers minutes 120..240: (110 - 100) per hour
        assert ev.evaluate(last) == []
        assert ev.get_states()[0].last_value == pytest.approx(10.0)


def test_state_persisted_and_restored(temp_store, make_sample):
    rules = _rules(_absolute(breaches=1))
    ev = ThresholdEvaluator(rules, temp_store, persist_state=True)
    _feed(ev, make_sample, [85])

    restored = ThresholdEvaluator(rules, temp_store, persist_state=True)
    assert restored.get_states("FIRING")[0].rule_id == "used_high"
    # still firing after restart: the next breach is a reminder, not a new transition
    events = restored.evaluate(make_sample(90, minutes=1))
    assert [e.transition for e in events] == [False]


def test_test_rules_leaves_state_untouched(temp_store, make_sample):
    ev = ThresholdEvaluator(_rules(_absolute(breaches=1)), temp_store)
    results = ev.test_rules([make_sample(85)])
    assert results[0]["would_breach"] is True
    assert results[0]["observed"] == 85.0
    assert ev.get_states() == []


def test_format_event_summary(temp_store, make_sample):
    ev = ThresholdEvaluator(_rules(_absolute(breaches=1)), temp_store)
    events = ev.evaluate(make_sample(85))
    text = ThresholdEvaluator.format_event_summary(events)
    assert "[HIGH]" in text and "FIRING" in text
    assert ThresholdEvaluator.format_event_summary([]).startswith("All clear")
