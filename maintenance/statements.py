"""Typed maintenance statements, rendered to T-SQL separately from planning."""
from dataclasses import dataclass


def quote_name(name):
    """Bracket-quote an identifier, escaping any closing bracket."""
    return "[" + str(name).replace("]", "]]") + "]"


def qualified(*parts):
    return ".".join(quote_name(p) for p in parts if p)


@dataclass(frozen=True)
class IndexMaintenance:
    database_name: str
    schema_name: str
    table_name: str
    index_name: str
    action: str                  # REORGANIZE | REBUILD
    fragmentation_pct: float = 0.0
    page_count: int = 0
    online: bool = False

    @property
    def target(self):
        return f"{self.schema_name}.{self.table_name}.{self.index_name}"

    def render(self):
        sql = (
            f"ALTER INDEX {quote_name(self.index_name)} ON "
            f"{qualified(self.database_name, self.schema_name, self.table_name)} {self.action}"
        )
        if self.action == "REBUILD" and self.online:
            sql += " WITH (ONLINE = ON)"
        return sql + ";"

    def describe(self):
        return f"{self.action} {self.target} ({self.fragmentation_pct:.1f}% of {self.page_count} pages)"


@dataclass(frozen=True)
class StatisticsUpdate:
    schema_name: str
    table_name: str
    stats_name: str
    modification_counter: int = 0
    fullscan: bool = True

    @property
    def target(self):
        return f"{self.schema_name}.{self.table_name}.{self.stats_name}"

    def render(self):
        sql = (
            f"UPDATE STATISTICS {qualified(self.schema_name, self.table_name)} "
            f"({quote_name(self.stats_name)})"
        )
        if self.fullscan:
            sql += " WITH FULLSCAN"
        return sql + ";"

    def describe(self):
        return f"UPDATE STATISTICS {self.target} ({self.modification_counter} modifications)"
