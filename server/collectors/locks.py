# server/collectors/locks.py
from __future__ import annotations
from collections import defaultdict

from db.engine_pool import LiveConnection
from db.models import LockSnapshot
from .base import Full, MetricCollector

# Every column that identifies the locked object; two rows with equal
# identity and different pids are contending for the same lock.
LOCK_IDENTITY = (
    "locktype", "database", "relation_oid", "page", "tuple", "virtualxid",
    "transactionid", "classid", "objid", "objsubid",
)

LOCKS_SQL = """
    SELECT
        l.pid,
        l.locktype,
        l.database,
        l.relation AS relation_oid,
        l.page,
        l.tuple,
        l.virtualxid,
        l.transactionid::text AS transactionid,
        l.classid,
        l.objid,
        l.objsubid,
        c.relname AS relation,
        l.mode,
        l.granted
    FROM pg_catalog.pg_locks l
    LEFT JOIN pg_catalog.pg_class c ON c.oid = l.relation
    WHERE l.pid IS NOT NULL
      AND l.pid <> pg_backend_pid()
    ORDER BY l.pid
"""


def _identity(row: dict) -> tuple:
    return tuple(row.get(key) for key in LOCK_IDENTITY)


def blocking_rows(rows: list[dict]) -> list[dict]:
    """Reduce raw pg_locks rows to the rows worth keeping.

    A granted lock is kept when at least one other pid waits on the same
    lock object; its ``blocking_pids`` lists those waiters. An ungranted
    lock is kept only when no visible holder accounts for it (for example
    the holder is our own backend), so a waiter already listed under its
    holder is not reported twice.
    """
    waiters: dict[tuple, set[int]] = defaultdict(set)
    for row in rows:
        if not row.get("granted"):
            waiters[_identity(row)].add(row["pid"])

    kept: list[dict] = []
    accounted: set[tuple[int, tuple]] = set()
    for row in rows:
        if not row.get("granted"):
            continue
        key = _identity(row)
        blocked = sorted(pid for pid in waiters.get(key, ()) if pid != row["pid"])
        if not blocked:
            continue
        accounted.update((pid, key) for pid in blocked)
        kept.append(_normalize(row, blocked))

    for row in rows:
        if not row.get("granted") and (row["pid"], _identity(row)) not in accounted:
            kept.append(_normalize(row, None))
    kept.sort(key=lambda r: r["pid"])
    return kept


def _normalize(row: dict, blocked: list[int] | None) -> dict:
    return {
        "pid": row["pid"],
        "locktype": row.get("locktype"),
        "relation": row.get("relation"),
        "mode": row.get("mode"),
        "granted": bool(row.get("granted")),
        "blocking_pids": blocked,
    }


class LockCollector(MetricCollector):
    name = "locks"
    snapshot_model = LockSnapshot

    async def collect(self, target_id: int, conn: LiveConnection) -> Full:
        rows = await conn.fetch_all(LOCKS_SQL)
        return Full(tuple(blocking_rows(rows)))
