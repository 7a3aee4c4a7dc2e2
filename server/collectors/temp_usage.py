# server/collectors/temp_usage.py
from __future__ import annotations
import re
from typing import Optional

from db.engine_pool import LiveConnection
from db.models import TempUsageSnapshot
from .base import CollectedRows, Degraded, Full, MetricCollector
from .probe import STAT_STATEMENTS

# checked in this order; the first match wins
QUERY_TYPE_PATTERNS = (
    ("GROUP BY", re.compile(r"group\s+by", re.IGNORECASE)),
    ("ORDER BY", re.compile(r"order\s+by", re.IGNORECASE)),
    ("JOIN", re.compile(r"join", re.IGNORECASE)),
    ("DISTINCT", re.compile(r"distinct", re.IGNORECASE)),
)

# temp files are named pgsql_tmp<pid>.<n>; pg_ls_tmpdir() needs pg_monitor
TEMP_FILES_SQL = r"""
    WITH temp_files_by_backend AS (
        SELECT
            (regexp_match(name, '^pgsql_tmp(\d+)'))[1]::int AS pid,
            SUM(size) AS temp_bytes
        FROM pg_ls_tmpdir()
        GROUP BY 1
    )
    SELECT
        a.pid,
        a.usename AS username,
        a.datname AS database_name,
        COALESCE(t.temp_bytes, 0) AS temp_bytes,
        a.query
    FROM pg_stat_activity a
    LEFT JOIN temp_files_by_backend t ON t.pid = a.pid
    WHERE a.pid <> pg_backend_pid()
      AND (t.temp_bytes IS NOT NULL OR a.state = 'active')
    ORDER BY temp_bytes DESC
"""

ACTIVE_SESSIONS_SQL = """
    SELECT
        a.pid,
        a.usename AS username,
        a.datname AS database_name
    FROM pg_stat_activity a
    WHERE a.pid <> pg_backend_pid()
      AND a.state = 'active'
"""


def classify_query(query: Optional[str]) -> str:
    if not query:
        return "OTHER"
    for label, pattern in QUERY_TYPE_PATTERNS:
        if pattern.search(query):
            return label
    return "OTHER"


class TempUsageCollector(MetricCollector):
    name = "temp_usage"
    snapshot_model = TempUsageSnapshot

    async def collect(self, target_id: int, conn: LiveConnection) -> CollectedRows:
        probe = await self._probe.check(conn, STAT_STATEMENTS)
        if not probe.installed:
            rows = await conn.fetch_all(ACTIVE_SESSIONS_SQL)
            return Degraded(
                tuple(
                    {"pid": r.get("pid"), "username": r.get("username"),
                     "database_name": r.get("database_name"), "temp_bytes": 0, "query_type": "UNKNOWN"}
                    for r in rows
                ),
                reason=f"{STAT_STATEMENTS} not installed, temp bytes unavailable",
            )
        rows = await conn.fetch_all(TEMP_FILES_SQL)
        return Full(tuple(
            {
                "pid": r.get("pid"),
                "username": r.get("username"),
                "database_name": r.get("database_name"),
                "temp_bytes": int(r.get("temp_bytes") or 0),
                "query_type": classify_query(r.get("query")),
            }
            for r in rows
        ))
