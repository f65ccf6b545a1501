"""Builds maintenance work-lists from fragmentation and statistics rows."""
import logging

from maintenance.statements import IndexMaintenance, StatisticsUpdate
from monitor.normalizer import lower_keys, to_number

logger = logging.getLogger("dbwatch.maintenance.planner")

REORGANIZE = "REORGANIZE"
REBUILD = "REBUILD"


def index_action(fragmentation_pct, reorganize_at=10.0, rebuild_at=30.0):
    """REBUILD above ``rebuild_at``, REORGANIZE from ``reorganize_at``, else None."""
    if fragmentation_pct > rebuild_at:
        return REBUILD
    if fragmentation_pct >= reorganize_at:
        return REORGANIZE
    return None


def plan_index_maintenance(rows, reorganize_at=10.0, rebuild_at=30.0, min_pages=1000, online=False):
    """Index maintenance statements, most fragmented first."""
    plan = []
    for raw in rows:
        row = lower_keys(raw)
        frag = to_number(row.get("fragmentation_pct"))
        pages = to_number(row.get("page_count"))
        if frag is None or pages is None or not row.get("index_name") or not row.get("table_name"):
            logger.debug(f"Skipping incomplete fragmentation row: {raw}")
            continue
        if pages <= min_pages:
            continue
        action = index_action(frag, reorganize_at, rebuild_at)
        if action is None:
            continue
        plan.append(IndexMaintenance(
            database_name=row.get("database_name") or "",
            schema_name=row.get("schema_name") or "dbo",
            table_name=row["table_name"],
            index_name=row["index_name"],
            action=action,
            fragmentation_pct=frag,
            page_count=int(pages),
            online=online,
        ))
    plan.sort(key=lambda s: s.fragmentation_pct, reverse=True)
    return plan


def plan_statistics_updates(rows, min_modifications=1000, fullscan=True):
    """Statistics refreshes for stats with at least ``min_modifications`` changes."""
    plan = []
    for raw in rows:
        row = lower_keys(raw)
        mods = to_number(row.get("modification_counter"))
        if mods is None or not row.get("stats_name") or not row.get("table_name"):
            continue
        if mods < min_modifications:
            continue
        plan.append(StatisticsUpdate(
            schema_name=row.get("schema_name") or "dbo",
            table_name=row["table_name"],
            stats_name=row["stats_name"],
            modification_counter=int(mods),
            fullscan=fullscan,
        ))
    plan.sort(key=lambda s: s.modification_counter, reverse=True)
    return plan
