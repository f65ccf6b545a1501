"""Target systems: SQLAlchemy-backed query execution against monitored servers."""
import logging
import math
import re
import time

from sqlalchemy import create_engine, text

from utils.errors import ConfigError

logger = logging.getLogger("dbwatch.targets")

_WRITE_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "MERGE", "ALTER", "DROP", "CREATE", "TRUNCATE",
    "GRANT", "REVOKE", "DENY", "BACKUP", "RESTORE", "EXEC", "EXECUTE", "DBCC",
    "SHUTDOWN", "KILL", "RECONFIGURE", "INTO",
)
_WRITE_RE = re.compile(r"\b(" + "|".join(_WRITE_KEYWORDS) + r")\b", re.IGNORECASE)
_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_LITERAL_RE = re.compile(r"N?'(?:[^']|'')*'")
_BRACKET_RE = re.compile(r"\[(?:[^\]]|\]\])*\]")


def write_keywords(query):
    """Statement keywords in ``query`` that could modify server state.

    Comments, string literals and [bracketed] identifiers are ignored.
    """
    stripped = _COMMENT_RE.sub(" ", query or "")
    stripped = _LITERAL_RE.sub("''", stripped)
    stripped = _BRACKET_RE.sub("[x]", stripped)
    return sorted({m.group(1).upper() for m in _WRITE_RE.finditer(stripped)})


def is_read_only_query(query):
    return bool((query or "").strip()) and not write_keywords(query)


class SQLTarget:
    """One monitored server reachable through a SQLAlchemy URL."""

    def __init__(self, name, url, connect_timeout=10, engine=None):
        self.name = name
        self.url = url
        self.connect_timeout = connect_timeout
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            kwargs = {"pool_pre_ping": True}
            if self.uses_pyodbc:
                kwargs["connect_args"] = {"timeout": self.connect_timeout}
            self._engine = create_engine(self.url, **kwargs)
        return self._engine

    @property
    def uses_pyodbc(self):
        return str(self.url).startswith("mssql+pyodbc")

    def _set_query_timeout(self, conn, seconds):
        # pyodbc cancels the statement server-side once this many seconds pass; 0 disables
        if self.uses_pyodbc:
            conn.connection.dbapi_connection.timeout = int(math.ceil(seconds)) if seconds else 0

    def execute(self, query, timeout=None):
        """Run a read-only query and return rows as dicts keyed by column name.

        ``timeout`` is handed to the driver as a query timeout where it
        supports one. The transaction is always rolled back.
        """
        blocked = write_keywords(query)
        if blocked:
            raise ConfigError(f"Refusing non read-only query on {self.name}: {', '.join(blocked)}")
        with self.engine.connect() as conn:
            self._set_query_timeout(conn, timeout)
            try:
                result = conn.execute(text(query))
                rows = [dict(r._mapping) for r in result] if result.returns_rows else []
            finally:
                conn.rollback()
                self._set_query_timeout(conn, 0)
        return rows

    def execute_statement(self, statement):
        """Run a state-changing statement in its own transaction (maintenance only)."""
        with self.engine.begin() as conn:
            conn.execute(text(statement))

    def ping(self):
        self.execute("SELECT 1 AS ok")

    def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


class TargetRegistry:
    """Named targets built from the ``targets`` config section."""

    def __init__(self, config=None, targets=None):
        self._targets = {}
        cfg = (config or {}).get("targets", {}) or {}
        for name, target_cfg in cfg.items():
            self._targets[name] = SQLTarget(
                name,
                target_cfg["url"],
                connect_timeout=target_cfg.get("connect_timeout", 10),
            )
        for target in targets or []:
            self._targets[target.name] = target

    def add(self, target):
        self._targets[target.name] = target

    def get(self, name):
        target = self._targets.get(name)
        if target is None:
            raise ConfigError(f"Unknown target: {name}")
        return target

    def names(self):
        return sorted(self._targets)

    def health_check(self):
        """Test connectivity to each target."""
        checks = {}
        for name in self.names():
            start = time.monotonic()
            try:
                self._targets[name].ping()
                reachable, error = True, None
            except Exception as e:
                reachable, error = False, str(e)
            latency = int((time.monotonic() - start) * 1000)
            checks[name] = {"reachable": reachable, "latency_ms": latency, "error": error}
        return checks

    def close(self):
        for target in self._targets.values():
            target.close()
