"""Thread-safe counters for self-observability."""
import threading
from collections import Counter


class Counters:
    """Named monotonically increasing counters, optionally labelled."""

    def __init__(self):
        self._values = Counter()
        self._lock = threading.Lock()

    @staticmethod
    def _key(name, label):
        return f"{name}[{label}]" if label else name

    def incr(self, name, amount=1, label=None):
        with self._lock:
            self._values[self._key(name, label)] += amount

    def get(self, name, label=None):
        with self._lock:
            return self._values.get(self._key(name, label), 0)

    def snapshot(self):
        """Return a plain dict copy of all counters."""
        with self._lock:
            return dict(self._values)

    def reset(self):
        with self._lock:
            self._values.clear()
