# server/collectors/sessions.py
from __future__ import annotations

from db.engine_pool import LiveConnection
from db.models import SessionSnapshot
from .base import Full, MetricCollector

SESSIONS_SQL = """
    SELECT
        pid,
        usename AS username,
        application_name,
        datname AS database_name,
        client_addr,
        backend_start,
        query_start,
        state
    FROM pg_stat_activity
    WHERE pid <> pg_backend_pid()
"""


def estimate_cpu_usage(rows: list[dict]) -> list[float]:
    """Coarse CPU share: 100% split evenly across active sessions.

    PostgreSQL exposes no per-backend CPU counters, so this is an
    approximation for ranking, not a measurement. Idle sessions get 0.
    """
    active = sum(1 for r in rows if r.get("state") == "active")
    share = 100.0 / active if active else 0.0
    return [share if r.get("state") == "active" else 0.0 for r in rows]


class SessionCollector(MetricCollector):
    name = "sessions"
    snapshot_model = SessionSnapshot

    async def collect(self, target_id: int, conn: LiveConnection) -> Full:
        rows = await conn.fetch_all(SESSIONS_SQL)
        shares = estimate_cpu_usage(rows)
        return Full(tuple(
            {
                "pid": r["pid"],
                "username": r.get("username"),
                "application_name": r.get("application_name"),
                "database_name": r.get("database_name"),
                # inet comes back as an ipaddress object
                "client_addr": str(r["client_addr"]) if r.get("client_addr") is not None else None,
                "backend_start": r.get("backend_start"),
                "query_start": r.get("query_start"),
                "state": r.get("state"),
                "cpu_usage": share,
            }
            for r, share in zip(rows, shares)
        ))
