"""Background scheduler: wall-clock aligned ticks per metric source."""
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait

import schedule

from utils.counters import Counters

logger = logging.getLogger("dbwatch.scheduler")


def next_boundary(now, interval):
    """First interval boundary strictly after ``now``."""
    return math.floor(now / interval) * interval + interval


class _Entry:
    __slots__ = ("source", "next_run", "suspended")

    def __init__(self, source):
        self.source = source
        self.next_run = 0.0
        self.suspended = False


class SourceScheduler:
    """Runs ``runner(source, cancel)`` for every scheduled source on its interval.

    One loop thread decides which sources are due; the runs themselves go to
    a worker pool, so a slow source never holds up another source's tick.
    A source has at most one run in flight. Boundaries that pass while the
    previous run is still going are skipped and counted as
    ``overlaps_skipped``; they are never replayed.
    """

    def __init__(self, runner, max_workers=8, tick_resolution=0.05, counters=None,
                 cancel=None, clock=time.time):
        self.runner = runner
        self.tick_resolution = tick_resolution
        self.counters = counters or Counters()
        self.cancel = cancel or threading.Event()
        self.clock = clock
        self._entries = {}
        self._inflight = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dbwatch-run")
        self._housekeeping = schedule.Scheduler()
        self._thread = None
        self._running = False

    # --- registration ---

    def schedule(self, source):
        """Register a source; its first run happens on the next loop pass."""
        with self._lock:
            self._entries[source.id] = _Entry(source)
        logger.debug(f"Scheduled {source.id} every {source.interval:g}s")

    def every(self, seconds, job, name=None):
        """Register a housekeeping job (retention pruning and the like)."""
        name = name or getattr(job, "__name__", "job")
        self._housekeeping.every(seconds).seconds.do(self._submit_job, name, job)

    def sources(self):
        with self._lock:
            return [e.source for e in self._entries.values()]

    # --- lifecycle ---

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, name="dbwatch-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with {len(self._entries)} sources")

    def stop(self, grace=10.0):
        """Stop ticking and wait up to ``grace`` seconds for in-flight runs.

        Returns True when every in-flight run finished within the grace period.
        """
        deadline = time.monotonic() + grace
        self._running = False
        self.cancel.set()
        self._housekeeping.clear()
        if self._thread:
            self._thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._thread = None

        with self._lock:
            pending = [f for f in self._inflight.values() if not f.done()]
        _, not_done = wait(pending, timeout=max(0.0, deadline - time.monotonic()))
        if not_done:
            logger.warning(f"{len(not_done)} runs still in flight after {grace:g}s grace; abandoning them")
        self._pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Scheduler stopped")
        return not not_done

    @property
    def running(self):
        return self._running

    # --- control ---

    def trigger(self, source_id):
        """Run a source now, outside its schedule. Returns the Future or None."""
        with self._lock:
            entry = self._entries.get(source_id)
        if entry is None:
            raise KeyError(source_id)
        entry.suspended = False
        return self._submit(entry.source)

    def suspend(self, source_id):
        with self._lock:
            entry = self._entries.get(source_id)
        if entry is not None and not entry.suspended:
            entry.suspended = True
            logger.warning(f"Source {source_id} suspended until triggered or resumed")

    def resume(self, source_id):
        with self._lock:
            entry = self._entries.get(source_id)
        if entry is not None and entry.suspended:
            entry.suspended = False
            logger.info(f"Source {source_id} resumed")

    def is_suspended(self, source_id):
        with self._lock:
            entry = self._entries.get(source_id)
        return bool(entry and entry.suspended)

    def is_running(self, source_id):
        with self._lock:
            future = self._inflight.get(source_id)
        return future is not None and not future.done()

    # --- loop ---

    def _run_loop(self):
        while self._running and not self.cancel.is_set():
            self.tick(self.clock())
            self._housekeeping.run_pending()
            self.cancel.wait(self.tick_resolution)

    def tick(self, now):
        """Submit every source whose boundary has been reached at ``now``."""
        with self._lock:
            due = [e for e in self._entries.values() if e.next_run <= now]
            for entry in due:
                entry.next_run = next_boundary(now, entry.source.interval)
        for entry in due:
            if entry.suspended:
                continue
            self._submit(entry.source)

    def _submit(self, source):
        with self._lock:
            current = self._inflight.get(source.id)
            if current is not None and not current.done():
                self.counters.incr("overlaps_skipped", label=source.id)
                logger.debug(f"Skipping tick for {source.id}: previous run still in flight")
                return None
            if self.cancel.is_set():
                return None
            future = self._pool.submit(self._execute, source)
            self._inflight[source.id] = future
            return future

    def _execute(self, source):
        try:
            return self.runner(source, self.cancel)
        except Exception as e:
            logger.exception(f"Run for {source.id} failed unexpectedly: {e}")
            return None

    def _submit_job(self, name, job):
        def run():
            try:
                job()
            except Exception as e:
                logger.exception(f"Housekeeping job {name} failed: {e}")
        if not self.cancel.is_set():
            self._pool.submit(run)
