"""Alert dispatch: dedup, re-notification interval, and per-sink retry."""
import logging
import sqlite3
import threading
import time
from datetime import datetime

from alerts.sinks import accepts
from models.enums import AlertStatus
from models.metrics import ensure_utc, tags_key
from utils.backoff import retry_with_backoff
from utils.counters import Counters

logger = logging.getLogger("dbwatch.alerts.dispatcher")


class AlertDispatcher:
    """Routes AlertEvents to sinks.

    A FIRING event for a (rule, tags) key already notified within
    ``renotify_seconds`` is suppressed; ``renotify_seconds=0`` notifies on
    state transitions only. CLEAR events always go out. A sink that keeps
    failing after its retries is logged and counted; it never blocks
    delivery to the other sinks.
    """

    def __init__(self, sinks, renotify_seconds=3600, max_attempts=3, backoff_base=1.0,
                 backoff_max=30.0, store=None, counters=None, cancel=None, clock=time.time):
        self.sinks = list(sinks)
        self.renotify_seconds = renotify_seconds
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.store = store
        self.counters = counters or Counters()
        self.cancel = cancel
        self.clock = clock
        self._last_notified = {}
        self._lock = threading.Lock()
        if store is not None:
            self._restore_last_notified()

    def _restore_last_notified(self):
        """Pick up notification times of alerts still firing from the archive."""
        try:
            archived = self.store.latest_alert_events()
        except sqlite3.Error as e:
            logger.error(f"Could not read alert history: {e}")
            return
        for row in archived:
            if row["status"] != AlertStatus.FIRING.value:
                continue
            key = (row["rule_id"], tags_key(row["tags"]))
            self._last_notified[key] = ensure_utc(datetime.fromisoformat(row["triggered_at"])).timestamp()
        if self._last_notified:
            logger.info(f"Restored notification times for {len(self._last_notified)} firing alerts")

    def should_notify(self, event):
        now = self.clock()
        with self._lock:
            if event.status == AlertStatus.CLEAR:
                self._last_notified.pop(event.key, None)
                return True
            last = self._last_notified.get(event.key)
            if event.transition:
                self._last_notified[event.key] = now
                return True
            if last is None:
                # reminder with no notification on record: start the interval here
                self._last_notified[event.key] = now
                return False
            if self.renotify_seconds and now - last >= self.renotify_seconds:
                self._last_notified[event.key] = now
                return True
            return False

    def dispatch(self, event):
        """Deliver one event. Returns False when it was suppressed."""
        if not self.should_notify(event):
            self.counters.incr("events_suppressed")
            logger.debug(f"Suppressed repeat notification for {event.rule_id} {event.tags}")
            return False

        self.counters.incr("alerts_dispatched")
        if self.store is not None:
            try:
                self.store.save_alert_event(event)
            except sqlite3.Error as e:
                self.counters.incr("store_write_failures")
                logger.error(f"Could not archive alert {event.rule_id}: {e}")

        for sink in self.sinks:
            if not accepts(sink, event):
                continue
            try:
                retry_with_backoff(
                    lambda: sink.notify(event),
                    attempts=self.max_attempts,
                    base_delay=self.backoff_base,
                    max_delay=self.backoff_max,
                    cancel=self.cancel,
                    description=f"sink {sink.name}",
                )
            except Exception as e:
                self.counters.incr("sink_failures", label=sink.name)
                logger.error(f"Alert delivery to {sink.name} failed for {event.rule_id}: {e}")
        return True

    def dispatch_all(self, events):
        return sum(1 for e in events if self.dispatch(e))

    def forget(self, key):
        with self._lock:
            self._last_notified.pop(key, None)
