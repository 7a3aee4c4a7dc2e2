# server/collectors/waits.py
from __future__ import annotations

from db.engine_pool import LiveConnection
from db.models import WaitEventSnapshot
from .base import CollectedRows, Degraded, Full, MetricCollector
from .probe import WAIT_SAMPLING

ACTIVITY_WAITS_SQL = """
    SELECT
        pid,
        wait_event_type,
        wait_event,
        EXTRACT(EPOCH FROM (now() - state_change)) AS wait_time
    FROM pg_stat_activity
    WHERE wait_event IS NOT NULL
      AND pid <> pg_backend_pid()
"""

# pg_wait_sampling keeps a ring buffer of samples; only the recent ones matter
SAMPLED_WAITS_SQL = ACTIVITY_WAITS_SQL + """
    UNION ALL
    SELECT
        pid,
        event_type AS wait_event_type,
        event AS wait_event,
        EXTRACT(EPOCH FROM (now() - ts)) AS wait_time
    FROM pg_wait_sampling_history
    WHERE event IS NOT NULL
      AND pid <> pg_backend_pid()
      AND ts > now() - make_interval(secs => :window_seconds)
"""


def _normalize(row: dict) -> dict:
    wait_time = row.get("wait_time")
    return {
        "pid": row["pid"],
        "wait_event_type": row.get("wait_event_type"),
        "wait_event": row.get("wait_event"),
        "wait_time": float(wait_time) if wait_time is not None else None,
    }


class WaitEventCollector(MetricCollector):
    name = "wait_events"
    snapshot_model = WaitEventSnapshot
    sample_window_seconds = 60

    async def collect(self, target_id: int, conn: LiveConnection) -> CollectedRows:
        probe = await self._probe.check(conn, WAIT_SAMPLING)
        if probe.installed:
            rows = await conn.fetch_all(SAMPLED_WAITS_SQL, {"window_seconds": self.sample_window_seconds})
            return Full(tuple(_normalize(r) for r in rows if r.get("wait_event") is not None))
        rows = await conn.fetch_all(ACTIVITY_WAITS_SQL)
        return Degraded(
            tuple(_normalize(r) for r in rows if r.get("wait_event") is not None),
            reason=f"{WAIT_SAMPLING} not installed, live activity only",
        )
