# server/collectors/query_stats.py
from __future__ import annotations

from db.engine_pool import LiveConnection
from db.models import QueryStatSnapshot
from .base import CollectedRows, Degraded, Full, MetricCollector
from .probe import STAT_STATEMENTS

TOP_QUERIES = 100

QUERY_STATS_SQL = """
    SELECT
        queryid AS query_id,
        query,
        calls,
        total_exec_time AS total_time,
        min_exec_time AS min_time,
        max_exec_time AS max_time,
        mean_exec_time AS mean_time,
        rows
    FROM pg_stat_statements
    ORDER BY total_exec_time DESC
    LIMIT :limit
"""


def _float(value):
    return float(value) if value is not None else None


class QueryStatCollector(MetricCollector):
    name = "query_stats"
    snapshot_model = QueryStatSnapshot

    async def collect(self, target_id: int, conn: LiveConnection) -> CollectedRows:
        probe = await self._probe.check(conn, STAT_STATEMENTS)
        if not probe.installed:
            # skipped, not failed
            return Degraded(reason=f"{STAT_STATEMENTS} extension not available, skipping query stats", skipped=True)
        rows = await conn.fetch_all(QUERY_STATS_SQL, {"limit": TOP_QUERIES})
        return Full(tuple(
            {
                "query_id": r.get("query_id"),
                "query": r.get("query"),
                "calls": r.get("calls"),
                "total_time": _float(r.get("total_time")),
                "min_time": _float(r.get("min_time")),
                "max_time": _float(r.get("max_time")),
                "mean_time": _float(r.get("mean_time")),
                "rows": r.get("rows"),
            }
            for r in rows
        ))
