"""SQLite history store for metric samples, alert states, and alert history."""
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from models.alerts import AlertState
from models.enums import AlertStatus, AppendOutcome
from models.metrics import PruneResult, Sample, ensure_utc, tags_key
from utils.backoff import retry_with_backoff
from utils.counters import Counters

logger = logging.getLogger("dbwatch.db")


def _ts(dt):
    return ensure_utc(dt).timestamp()


def _from_ts(value):
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _iso(dt):
    return dt.isoformat() if dt else None


def _parse_iso(value):
    return datetime.fromisoformat(value) if value else None


class HistoryStore:
    """Append-only time series of samples, shared by all collection threads.

    Every connection access goes through one lock, so ``append`` and
    ``query`` are safe to call concurrently. Write failures are retried with
    backoff and the sample is dropped once the budget is exhausted; a
    degraded store never blocks the caller for longer than that budget.
    """

    def __init__(self, db_path="data/dbwatch.db", counters=None, max_write_attempts=3,
                 backoff_base=0.1, backoff_max=2.0, cancel=None):
        self.db_path = db_path
        self.conn = None
        self.counters = counters or Counters()
        self.max_write_attempts = max_write_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.cancel = cancel
        self._lock = threading.RLock()
        self._last_seen = {}

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        return self

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                metric_name TEXT NOT NULL,
                tags TEXT NOT NULL,
                value REAL NOT NULL,
                unit TEXT DEFAULT '',
                collected_at REAL NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_samples_identity
                ON samples(source_id, metric_name, tags, collected_at);

            CREATE INDEX IF NOT EXISTS idx_samples_series
                ON samples(metric_name, tags, collected_at);

            CREATE TABLE IF NOT EXISTS alert_states (
                rule_id TEXT NOT NULL,
                tags TEXT NOT NULL,
                status TEXT NOT NULL,
                first_fired_at TEXT,
                last_evaluated_at TEXT,
                breach_streak INTEGER DEFAULT 0,
                recovery_streak INTEGER DEFAULT 0,
                last_value REAL,
                PRIMARY KEY (rule_id, tags)
            );

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id TEXT NOT NULL,
                rule_name TEXT NOT NULL,
                tags TEXT NOT NULL,
                status TEXT NOT NULL,
                severity TEXT NOT NULL,
                value REAL,
                threshold REAL,
                message TEXT,
                triggered_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_triggered
                ON alert_history(triggered_at);
        """)
        self.conn.commit()

    # --- Samples ---

    def append(self, sample):
        """Store one sample; returns an AppendOutcome and never raises on write failure."""
        ts = _ts(sample.collected_at)
        key = sample.series_key

        with self._lock:
            last = self._last_seen.get(key)
            if last is None:
                last = self._load_last_seen(key)
            if last is not None and ts < last:
                self.counters.incr("samples_out_of_order")
                logger.warning(
                    f"Discarding out-of-order sample {sample.metric_name} {sample.tags} "
                    f"from {sample.source_id}: {sample.collected_at.isoformat()} < {_from_ts(last).isoformat()}"
                )
                return AppendOutcome.OUT_OF_ORDER

        try:
            inserted = retry_with_backoff(
                lambda: self._insert(sample, ts),
                attempts=self.max_write_attempts,
                base_delay=self.backoff_base,
                max_delay=self.backoff_max,
                retry_on=(sqlite3.Error,),
                cancel=self.cancel,
                description=f"store write {sample.metric_name}",
            )
        except sqlite3.Error as e:
            self.counters.incr("store_write_failures")
            logger.error(f"Dropping sample {sample.metric_name} from {sample.source_id} after store failure: {e}")
            return AppendOutcome.DROPPED

        with self._lock:
            if last is None or ts > last:
                self._last_seen[key] = ts
        return AppendOutcome.INSERTED if inserted else AppendOutcome.DUPLICATE

    def _insert(self, sample, ts):
        with self._lock:
            cur = self.conn.execute("""
                INSERT OR IGNORE INTO samples
                (source_id, metric_name, tags, value, unit, collected_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (sample.source_id, sample.metric_name, sample.tags_key,
                  float(sample.value), sample.unit or "", ts))
            self.conn.commit()
            return cur.rowcount == 1

    def _load_last_seen(self, key):
        source_id, metric_name, tkey = key
        row = self.conn.execute("""
            SELECT MAX(collected_at) AS last FROM samples
            WHERE source_id = ? AND metric_name = ? AND tags = ?
        """, (source_id, metric_name, tkey)).fetchone()
        last = row["last"] if row else None
        if last is not None:
            self._last_seen[key] = last
        return last

    @staticmethod
    def _row_to_sample(row):
        return Sample(
            source_id=row["source_id"],
            metric_name=row["metric_name"],
            tags=json.loads(row["tags"]),
            value=row["value"],
            unit=row["unit"] or "",
            collected_at=_from_ts(row["collected_at"]),
        )

    def query(self, metric_name, tags=None, start=None, end=None, limit=None):
        """Samples for one metric ordered by collected_at ascending.

        ``tags=None`` returns every series of the metric; otherwise the tag
        set must match exactly.
        """
        sql = "SELECT * FROM samples WHERE metric_name = ?"
        params = [metric_name]
        if tags is not None:
            sql += " AND tags = ?"
            params.append(tags_key(tags))
        if start is not None:
            sql += " AND collected_at >= ?"
            params.append(_ts(start))
        if end is not None:
            sql += " AND collected_at <= ?"
            params.append(_ts(end))
        sql += " ORDER BY collected_at ASC, id ASC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_sample(r) for r in rows]

    def latest(self, metric_name, tags, until=None):
        """Most recent sample of one series at or before ``until``."""
        sql = "SELECT * FROM samples WHERE metric_name = ? AND tags = ?"
        params = [metric_name, tags_key(tags)]
        if until is not None:
            sql += " AND collected_at <= ?"
            params.append(_ts(until))
        sql += " ORDER BY collected_at DESC, id DESC LIMIT 1"
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return self._row_to_sample(row) if row else None

    def list_series(self, metric_name=None):
        sql = """
            SELECT source_id, metric_name, tags, COUNT(*) AS samples,
                   MIN(collected_at) AS first_at, MAX(collected_at) AS last_at
            FROM samples
        """
        params = []
        if metric_name:
            sql += " WHERE metric_name = ?"
            params.append(metric_name)
        sql += " GROUP BY source_id, metric_name, tags ORDER BY metric_name, tags"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [{
            "source_id": r["source_id"],
            "metric_name": r["metric_name"],
            "tags": json.loads(r["tags"]),
            "samples": r["samples"],
            "first_at": _from_ts(r["first_at"]),
            "last_at": _from_ts(r["last_at"]),
        } for r in rows]

    def count_samples(self):
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM samples").fetchone()
        return row["cnt"]

    def prune(self, policy, now=None):
        """Drop samples past the retention horizon, then downsample older data."""
        now_ts = _ts(now or datetime.now(timezone.utc))
        cutoff = now_ts - policy.horizon.total_seconds()
        downsampled = 0

        with self._lock:
            cur = self.conn.execute("DELETE FROM samples WHERE collected_at < ?", (cutoff,))
            expired = cur.rowcount

            if policy.downsample_after is not None and policy.downsample_after < policy.horizon:
                ds_cutoff = now_ts - policy.downsample_after.total_seconds()
                bucket = max(1.0, policy.downsample_bucket.total_seconds())
                cur = self.conn.execute("""
                    DELETE FROM samples
                    WHERE collected_at < ?
                      AND id NOT IN (
                          SELECT MIN(id) FROM samples
                          WHERE collected_at < ?
                          GROUP BY source_id, metric_name, tags, CAST(collected_at / ? AS INTEGER)
                      )
                """, (ds_cutoff, ds_cutoff, bucket))
                downsampled = cur.rowcount
            self.conn.commit()

        if expired or downsampled:
            logger.info(f"Pruned {expired} expired and {downsampled} downsampled samples")
        return PruneResult(expired=expired, downsampled=downsampled)

    # --- Alert State ---

    def save_alert_state(self, state):
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO alert_states
                (rule_id, tags, status, first_fired_at, last_evaluated_at,
                 breach_streak, recovery_streak, last_value)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                state.rule_id, tags_key(state.tags), state.status.value,
                _iso(state.first_fired_at), _iso(state.last_evaluated_at),
                state.breach_streak, state.recovery_streak, state.last_value,
            ))
            self.conn.commit()

    def load_alert_states(self, status=None):
        sql = "SELECT * FROM alert_states"
        params = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(AlertStatus(status).value)
        sql += " ORDER BY rule_id, tags"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [AlertState(
            rule_id=r["rule_id"],
            tags=json.loads(r["tags"]),
            status=AlertStatus(r["status"]),
            first_fired_at=_parse_iso(r["first_fired_at"]),
            last_evaluated_at=_parse_iso(r["last_evaluated_at"]),
            breach_streak=r["breach_streak"],
            recovery_streak=r["recovery_streak"],
            last_value=r["last_value"],
        ) for r in rows]

    # --- Alert History ---

    def save_alert_event(self, event):
        with self._lock:
            self.conn.execute("""
                INSERT INTO alert_history
                (rule_id, rule_name, tags, status, severity, value, threshold, message, triggered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.rule_id, event.rule_name, tags_key(event.tags), event.status.value,
                event.severity.value, event.value, event.threshold, event.message,
                event.triggered_at.isoformat(),
            ))
            self.conn.commit()

    def get_recent_alerts(self, limit=50):
        with self._lock:
            rows = self.conn.execute("""
                SELECT * FROM alert_history ORDER BY triggered_at DESC, id DESC LIMIT ?
            """, (limit,)).fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["tags"] = json.loads(d["tags"])
            result.append(d)
        return result

    def latest_alert_events(self):
        """Most recent archived event for each (rule_id, tags) key."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT h.* FROM alert_history h
                JOIN (
                    SELECT MAX(id) AS id FROM alert_history GROUP BY rule_id, tags
                ) last ON h.id = last.id
                ORDER BY h.rule_id, h.tags
            """).fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["tags"] = json.loads(d["tags"])
            result.append(d)
        return result
