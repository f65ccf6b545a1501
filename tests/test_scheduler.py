"""Tests for the source scheduler."""
import threading
import time
import pytest

from models.metrics import MetricMapping, MetricSource
from monitor.collector import Collector
from monitor.scheduler import SourceScheduler, next_boundary
from monitor.targets import TargetRegistry
from utils.errors import Cancelled, Unavailable
from conftest import BlockingTarget, FakeTarget


def _source(source_id, interval=0.2, timeout=5.0, target="fast"):
    return MetricSource(id=source_id, target=target, query="SELECT 1 AS v", interval=interval,
                        timeout=timeout, metrics=(MetricMapping(name="v", column="v"),))


class Recorder:
    def __init__(self, block=None):
        self.calls = []
        self.block = block
        self.lock = threading.Lock()

    def __call__(self, source, cancel):
        with self.lock:
            self.calls.append((source.id, time.monotonic()))
        if self.block is not None:
            self.block.wait(5)

    def count(self, source_id):
        with self.lock:
            return sum(1 for sid, _ in self.calls if sid == source_id)


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_next_boundary_is_wall_clock_aligned():
    assert next_boundary(1000, 60) == 1020
    assert next_boundary(1020, 60) == 1080
    assert next_boundary(0.25, 0.2) == pytest.approx(0.4)


class TestTick:
    def test_first_tick_runs_then_waits_for_boundary(self, counters):
        rec = Recorder()
        sched = SourceScheduler(rec, counters=counters)
        sched.schedule(_source("a", interval=60))
        sched.tick(1000)
        assert _wait_for(lambda: rec.count("a") == 1)
        sched.tick(1019.9)
        time.sleep(0.05)
        assert rec.count("a") == 1
        assert _wait_for(lambda: not sched.is_running("a"))
        sched.tick(1020)
        assert _wait_for(lambda: rec.count("a") == 2)
        sched.stop(1)

    def test_missed_boundaries_are_not_replayed(self, counters):
        rec = Recorder()
        sched = SourceScheduler(rec, counters=counters)
        sched.schedule(_source("a", interval=60))
        sched.tick(1000)
        assert _wait_for(lambda: rec.count("a") == 1)
        assert _wait_for(lambda: not sched.is_running("a"))
        sched.tick(1500)  # eight boundaries later
        assert _wait_for(lambda: rec.count("a") == 2)
        assert _wait_for(lambda: not sched.is_running("a"))
        sched.tick(1559.9)  # next boundary is 1560, nothing owed
        time.sleep(0.05)
        assert rec.count("a") == 2
        sched.stop(1)

    def test_overlapping_tick_is_skipped_and_counted(self, counters):
        release = threading.Event()
        rec = Recorder(block=release)
        sched = SourceScheduler(rec, counters=counters)
        sched.schedule(_source("a", interval=60))
        sched.tick(1000)
        assert _wait_for(lambda: sched.is_running("a"))
        sched.tick(1020)
        sched.tick(1080)
        assert rec.count("a") == 1
        assert counters.get("overlaps_skipped", label="a") == 2
        release.set()
        sched.stop(1)

    def test_suspend_resume_and_trigger(self, counters):
        rec = Recorder()
        sched = SourceScheduler(rec, counters=counters)
        sched.schedule(_source("a", interval=60))
        sched.suspend("a")
        assert sched.is_suspended("a")
        sched.tick(1000)
        time.sleep(0.05)
        assert rec.count("a") == 0

        sched.resume("a")
        sched.tick(1020)
        assert _wait_for(lambda: rec.count("a") == 1)

        assert _wait_for(lambda: not sched.is_running("a"))
        sched.suspend("a")
        sched.trigger("a").result(timeout=1)
        assert rec.count("a") == 2
        assert not sched.is_suspended("a")
        with pytest.raises(KeyError):
            sched.trigger("missing")
        sched.stop(1)


def test_slow_source_does_not_delay_other_ticks(counters):
    """A 100 ms timeout against a hung target leaves 200 ms ticks on time."""
    hung = BlockingTarget(name="slow")
    collector = Collector(TargetRegistry(targets=[hung, FakeTarget(name="fast", rows=[{"v": 1}])]))
    outcomes = {"slow": [], "fast": []}
    lock = threading.Lock()

    def runner(source, cancel):
        start = time.monotonic()
        try:
            collector.collect(source, cancel=cancel)
            result = "ok"
        except Cancelled:
            return
        except Unavailable:
            result = "unavailable"
        with lock:
            outcomes[source.id].append((start, time.monotonic() - start, result))

    sched = SourceScheduler(runner, max_workers=4, tick_resolution=0.01, counters=counters)
    sched.schedule(_source("slow", interval=0.2, timeout=0.1, target="slow"))
    sched.schedule(_source("fast", interval=0.2, target="fast"))
    sched.start()
    # longer than default query_workers x interval
    time.sleep(2.5)
    sched.stop(2)
    hung.release.set()
    collector.shutdown()

    with lock:
        slow, fast = list(outcomes["slow"]), list(outcomes["fast"])
    # immediate first run plus one per 200 ms boundary
    assert len(fast) >= 10
    assert all(r == "ok" for _, _, r in fast)
    assert len(slow) >= 3
    assert all(r == "unavailable" for _, _, r in slow)
    assert all(d < 0.5 for _, d, _ in slow)
    gaps = [b[0] - a[0] for a, b in zip(fast[1:], fast[2:])]
    assert all(g < 0.35 for g in gaps)


def test_stop_cancels_and_reports_unfinished_runs(counters):
    seen_cancel = threading.Event()

    def runner(source, cancel):
        if cancel.wait(5):
            seen_cancel.set()

    sched = SourceScheduler(runner, counters=counters, tick_resolution=0.01)
    sched.schedule(_source("a", interval=60))
    sched.start()
    assert _wait_for(lambda: sched.is_running("a"))
    assert sched.stop(1) is True
    assert seen_cancel.is_set()
    assert not sched.running


def test_stop_grace_expires_for_stuck_runs(counters):
    stuck = threading.Event()
    sched = SourceScheduler(lambda s, c: stuck.wait(5), counters=counters, tick_resolution=0.01)
    sched.schedule(_source("a", interval=60))
    sched.start()
    assert _wait_for(lambda: sched.is_running("a"))
    start = time.monotonic()
    assert sched.stop(0.2) is False
    assert time.monotonic() - start < 1.0
    stuck.set()


def test_runner_exception_does_not_stop_loop(counters):
    calls = []

    def runner(source, cancel):
        calls.append(source.id)
        raise RuntimeError("boom")

    sched = SourceScheduler(runner, counters=counters, tick_resolution=0.01)
    sched.schedule(_source("a", interval=0.1))
    sched.start()
    assert _wait_for(lambda: len(calls) >= 3)
    sched.stop(1)


def test_housekeeping_jobs_run(counters):
    ran = threading.Event()
    sched = SourceScheduler(lambda s, c: None, counters=counters, tick_resolution=0.01)
    sched.every(0.1, ran.set, name="prune")
    sched.start()
    assert ran.wait(2)
    sched.stop(1)
