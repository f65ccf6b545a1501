"""Executes diagnostic queries against targets with a per-source deadline."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone

from sqlalchemy.exc import NoSuchColumnError, ProgrammingError

from models.metrics import CollectionResult
from monitor.normalizer import lower_keys, required_columns
from utils.errors import Cancelled, ConfigError, SchemaMismatch, Unavailable

logger = logging.getLogger("dbwatch.collector")


class Collector:
    """Runs each query on its target's own pool and waits at most ``source.timeout``.

    A query that overruns its deadline is abandoned: the caller gets
    ``Unavailable`` straight away while the driver call finishes (or fails)
    on its pool thread in the background. Until it does, further collections
    of that source fail fast instead of starting another query, so a hung
    source holds at most one thread and only in its own target's pool.
    """

    def __init__(self, targets, max_workers=8, poll_interval=0.05):
        self.targets = targets
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self._pools = {}
        self._abandoned = {}
        self._lock = threading.Lock()

    def _pool_for(self, target_name):
        with self._lock:
            pool = self._pools.get(target_name)
            if pool is None:
                pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                          thread_name_prefix=f"dbwatch-query-{target_name}")
                self._pools[target_name] = pool
            return pool

    def _still_abandoned(self, source_id):
        with self._lock:
            future = self._abandoned.get(source_id)
            if future is not None and future.done():
                del self._abandoned[source_id]
                future = None
        return future is not None

    def _abandon(self, source_id, future):
        if not future.cancel():
            with self._lock:
                self._abandoned[source_id] = future

    def collect(self, source, cancel=None):
        try:
            target = self.targets.get(source.target)
        except ConfigError as e:
            raise SchemaMismatch(str(e), source_id=source.id) from e

        if self._still_abandoned(source.id):
            raise Unavailable(
                f"{source.id}: previous query on {source.target} has not returned yet",
                source_id=source.id,
            )

        start = time.monotonic()
        deadline = start + source.timeout
        future = self._pool_for(source.target).submit(target.execute, source.query, timeout=source.timeout)

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon(source.id, future)
                raise Unavailable(f"{source.id}: query timed out after {source.timeout:g}s", source_id=source.id)
            if cancel is not None and cancel.is_set():
                self._abandon(source.id, future)
                raise Cancelled(f"{source.id}: collection cancelled", source_id=source.id)
            step = remaining if cancel is None else min(remaining, self.poll_interval)
            done, _ = wait([future], timeout=step)
            if done:
                break

        try:
            rows = future.result()
        except (ProgrammingError, NoSuchColumnError) as e:
            raise SchemaMismatch(f"{source.id}: {e}", source_id=source.id) from e
        except ConfigError as e:
            raise SchemaMismatch(f"{source.id}: {e}", source_id=source.id) from e
        except Exception as e:
            raise Unavailable(f"{source.id}: {type(e).__name__}: {e}", source_id=source.id) from e

        collected_at = datetime.now(timezone.utc)
        duration_ms = int((time.monotonic() - start) * 1000)

        if not isinstance(rows, list) or any(not isinstance(r, dict) for r in rows):
            raise SchemaMismatch(f"{source.id}: result is not a list of rows", source_id=source.id)
        missing = self.missing_columns(source, rows)
        if missing:
            raise SchemaMismatch(
                f"{source.id}: result is missing columns {', '.join(missing)}",
                source_id=source.id,
                missing_columns=missing,
            )

        logger.debug(f"{source.id}: {len(rows)} rows in {duration_ms}ms")
        return CollectionResult(rows=rows, collected_at=collected_at, duration_ms=duration_ms)

    @staticmethod
    def missing_columns(source, rows):
        if not rows:
            return []
        present = set(lower_keys(rows[0]))
        return [c for c in required_columns(source) if c not in present]

    def shutdown(self):
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=False, cancel_futures=True)
