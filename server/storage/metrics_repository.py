# server/storage/metrics_repository.py
from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

import pandas as pd
from sqlalchemy import select, func, insert, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import (
    SNAPSHOT_MODELS, LockSnapshot, QueryStatSnapshot, SessionSnapshot,
    TempUsageSnapshot, VersionSnapshot, WaitEventSnapshot,
)
from registry.models import TargetConnection

MAX_ROW_LIMIT = 10_000


def clamp_hours(hours: Optional[int], default: int, maximum: int) -> int:
    if hours is None:
        return default
    return min(max(int(hours), 1), maximum)


def clamp_limit(limit: Optional[int], default: int) -> int:
    if limit is None:
        return default
    return min(max(int(limit), 1), MAX_ROW_LIMIT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rows(res) -> list[dict]:
    return [dict(r._mapping) for r in res.fetchall()]


class SqlMetricsRepository:
    """Append and read snapshot rows. Reads are windowed by recency."""

    def __init__(self, session: AsyncSession, *, recent_minutes: int = 5, max_history_hours: int = 720):
        self._db = session
        self._recent = timedelta(minutes=recent_minutes)
        self._max_hours = max_history_hours

    def _since(self, minutes: Optional[int]) -> datetime:
        window = timedelta(minutes=minutes) if minutes else self._recent
        return _utcnow() - window

    # ------------------------------------------------------------- writes

    async def insert_snapshots(self, model, records: list[dict]) -> int:
        if not records:
            return 0
        await self._db.execute(insert(model), records)
        await self._db.commit()
        return len(records)

    # ------------------------------------------------------------ version

    async def latest_version(self, target_id: int) -> Optional[str]:
        q = (
            select(VersionSnapshot.version)
            .where(VersionSnapshot.connection_id == target_id)
            .order_by(VersionSnapshot.collected_at.desc(), VersionSnapshot.id.desc())
            .limit(1)
        )
        res = await self._db.execute(q)
        return res.scalar_one_or_none()

    async def latest_versions(self) -> list[dict]:
        """Exactly one row per target: the one with the newest collected_at."""
        rn = func.row_number().over(
            partition_by=VersionSnapshot.connection_id,
            order_by=(VersionSnapshot.collected_at.desc(), VersionSnapshot.id.desc()),
        ).label("rn")
        sub = select(VersionSnapshot.connection_id, VersionSnapshot.version, VersionSnapshot.collected_at, rn).subquery()
        q = (
            select(sub.c.connection_id, sub.c.version, sub.c.collected_at)
            .where(sub.c.rn == 1)
            .order_by(sub.c.connection_id)
        )
        return _rows(await self._db.execute(q))

    # ----------------------------------------------------------- sessions

    async def sessions(self, target_id: Optional[int] = None, minutes: Optional[int] = None) -> list[dict]:
        s = SessionSnapshot
        if target_id is not None:
            q = select(s.__table__).where((s.connection_id == target_id) & (s.collected_at > self._since(minutes)))
        else:
            q = (
                select(s.__table__, TargetConnection.name.label("connection_name"),
                       TargetConnection.host.label("connection_host"))
                .join(TargetConnection, s.connection_id == TargetConnection.id)
                .where(s.collected_at > self._since(minutes))
            )
        return _rows(await self._db.execute(q.order_by(s.cpu_usage.desc())))

    async def top_sessions(self, limit: int = 10) -> list[dict]:
        s = SessionSnapshot
        q = (
            select(s.pid, s.username, s.application_name, s.database_name, s.cpu_usage, s.collected_at,
                   TargetConnection.name.label("connection_name"), TargetConnection.host.label("connection_host"))
            .join(TargetConnection, s.connection_id == TargetConnection.id)
            .where(s.collected_at > self._since(None))
            .order_by(s.cpu_usage.desc())
            .limit(clamp_limit(limit, 10))
        )
        return _rows(await self._db.execute(q))

    async def cpu_usage(self, target_id: int, limit: int = 10) -> list[dict]:
        s = SessionSnapshot
        q = (
            select(s.pid, s.username, s.application_name, s.cpu_usage)
            .where((s.connection_id == target_id) & (s.collected_at > self._since(None)) & (s.cpu_usage > 0))
            .order_by(s.cpu_usage.desc())
            .limit(clamp_limit(limit, 10))
        )
        return _rows(await self._db.execute(q))

    async def session_history(self, target_id: Optional[int] = None, hours: Optional[int] = None,
                              limit: Optional[int] = None) -> list[dict]:
        s = SessionSnapshot
        since = _utcnow() - timedelta(hours=clamp_hours(hours, 24, self._max_hours))
        cols = [s.pid, s.username, s.application_name, s.database_name, s.cpu_usage, s.collected_at]
        if target_id is not None:
            q = select(*cols).where((s.connection_id == target_id) & (s.collected_at > since))
        else:
            q = (
                select(*cols, TargetConnection.name.label("connection_name"),
                       TargetConnection.host.label("connection_host"))
                .join(TargetConnection, s.connection_id == TargetConnection.id)
                .where(s.collected_at > since)
            )
        q = q.order_by(s.collected_at.desc(), s.cpu_usage.desc()).limit(clamp_limit(limit, 1000))
        return _rows(await self._db.execute(q))

    # -------------------------------------------------------------- waits

    async def wait_summary(self, target_id: Optional[int] = None, minutes: Optional[int] = None) -> list[dict]:
        w = WaitEventSnapshot
        total = func.sum(w.wait_time).label("total_wait_time")
        aggs = [func.count().label("count"), func.avg(w.wait_time).label("avg_wait_time"), total]
        if target_id is not None:
            q = (
                select(w.wait_event_type, w.wait_event, *aggs)
                .where((w.connection_id == target_id) & (w.collected_at > self._since(minutes)))
                .group_by(w.wait_event_type, w.wait_event)
            )
        else:
            q = (
                select(w.connection_id, w.wait_event_type, w.wait_event, *aggs,
                       TargetConnection.name.label("connection_name"),
                       TargetConnection.host.label("connection_host"))
                .join(TargetConnection, w.connection_id == TargetConnection.id)
                .where(w.collected_at > self._since(minutes))
                .group_by(w.connection_id, w.wait_event_type, w.wait_event,
                          TargetConnection.name, TargetConnection.host)
            )
        return _rows(await self._db.execute(q.order_by(desc("total_wait_time"))))

    # --------------------------------------------------------------- temp

    async def temp_usage(self, target_id: Optional[int] = None, minutes: Optional[int] = None) -> list[dict]:
        t = TempUsageSnapshot
        if target_id is not None:
            q = select(t.__table__).where((t.connection_id == target_id) & (t.collected_at > self._since(minutes)))
        else:
            q = (
                select(t.__table__, TargetConnection.name.label("connection_name"),
                       TargetConnection.host.label("connection_host"))
                .join(TargetConnection, t.connection_id == TargetConnection.id)
                .where(t.collected_at > self._since(minutes))
            )
        return _rows(await self._db.execute(q.order_by(t.temp_bytes.desc())))

    async def temp_timeline(self, target_id: Optional[int] = None, hours: Optional[int] = None) -> list[dict]:
        """Total temp bytes per minute over the trailing hour window."""
        t = TempUsageSnapshot
        since = _utcnow() - timedelta(hours=clamp_hours(hours, 1, self._max_hours))
        if target_id is not None:
            q = select(t.collected_at, t.temp_bytes).where((t.connection_id == target_id) & (t.collected_at > since))
            keys: list[str] = []
        else:
            q = (
                select(t.collected_at, t.temp_bytes,
                       TargetConnection.name.label("connection_name"),
                       TargetConnection.host.label("connection_host"))
                .join(TargetConnection, t.connection_id == TargetConnection.id)
                .where(t.collected_at > since)
            )
            keys = ["connection_name", "connection_host"]
        rows = _rows(await self._db.execute(q))
        if not rows:
            return []

        df = pd.DataFrame(rows)
        df["time"] = pd.to_datetime(df["collected_at"], utc=True).dt.floor("min")
        grouped = (
            df.groupby([*keys, "time"], as_index=False)["temp_bytes"].sum()
            .sort_values([*keys, "time"])
        )
        out = []
        for rec in grouped.to_dict(orient="records"):
            item = {k: rec[k] for k in keys}
            item["time"] = rec["time"].to_pydatetime()
            item["total_bytes"] = int(rec["temp_bytes"])
            out.append(item)
        return out

    # -------------------------------------------------------- query stats

    async def query_stats(self, target_id: Optional[int] = None, limit: Optional[int] = None) -> list[dict]:
        """Newest row per (target, query_id), ranked by total execution time."""
        q_ = QueryStatSnapshot
        rn = func.row_number().over(
            partition_by=(q_.connection_id, q_.query_id),
            order_by=(q_.collected_at.desc(), q_.id.desc()),
        ).label("rn")
        inner = select(q_.connection_id, q_.query_id, q_.query, q_.calls, q_.total_time,
                       q_.mean_time, q_.rows, q_.collected_at, rn)
        if target_id is not None:
            inner = inner.where(q_.connection_id == target_id)
        sub = inner.subquery()
        cols = [sub.c.connection_id, sub.c.query_id, sub.c.query, sub.c.calls,
                sub.c.total_time, sub.c.mean_time, sub.c.rows]
        if target_id is not None:
            q = select(*cols)
        else:
            q = (
                select(*cols, TargetConnection.name.label("connection_name"),
                       TargetConnection.host.label("connection_host"))
                .join(TargetConnection, sub.c.connection_id == TargetConnection.id)
            )
        q = q.where(sub.c.rn == 1).order_by(sub.c.total_time.desc()).limit(clamp_limit(limit, 50))
        return _rows(await self._db.execute(q))

    # -------------------------------------------------------------- locks

    async def recent_locks(self, target_id: int, minutes: Optional[int] = None) -> list[dict]:
        lk = LockSnapshot
        q = (
            select(lk.__table__)
            .where((lk.connection_id == target_id) & (lk.collected_at > self._since(minutes)))
            .order_by(lk.collected_at.desc(), lk.pid)
        )
        return _rows(await self._db.execute(q))

    async def _latest_per_pid(self, model, cols, target_id: Optional[int]) -> dict[tuple[int, int], dict]:
        rn = func.row_number().over(
            partition_by=(model.connection_id, model.pid),
            order_by=(model.collected_at.desc(), model.id.desc()),
        ).label("rn")
        inner = select(model.connection_id, model.pid, *cols, rn)
        if target_id is not None:
            inner = inner.where(model.connection_id == target_id)
        sub = inner.subquery()
        res = await self._db.execute(select(sub).where(sub.c.rn == 1))
        return {(r["connection_id"], r["pid"]): r for r in _rows(res)}

    async def blocking_tree(self, target_id: Optional[int] = None, minutes: Optional[int] = None) -> list[dict]:
        """Blocker -> blocked hierarchy from the newest lock and session snapshots.

        Each blocker that nobody else blocks starts at level 0; the sessions it
        blocks follow at level 1, and so on down the chain.
        """
        lk = LockSnapshot
        # JSON has no equality operator on PostgreSQL, so no DISTINCT / IS NULL filtering in SQL
        q = select(lk.connection_id, lk.pid, lk.blocking_pids).where(lk.collected_at > self._since(minutes))
        if target_id is not None:
            q = q.where(lk.connection_id == target_id)
        recent = {(r["connection_id"], r["pid"]) for r in _rows(await self._db.execute(q)) if r["blocking_pids"]}
        if not recent:
            return []

        locks = await self._latest_per_pid(lk, [lk.locktype, lk.relation, lk.mode, lk.blocking_pids], target_id)
        sessions = await self._latest_per_pid(
            SessionSnapshot, [SessionSnapshot.username, SessionSnapshot.application_name], target_id
        )
        names: dict[int, tuple[str, str]] = {}
        if target_id is None:
            res = await self._db.execute(select(TargetConnection.id, TargetConnection.name, TargetConnection.host))
            names = {r.id: (r.name, r.host) for r in res.fetchall()}

        blocks: dict[tuple[int, int], list[int]] = {
            key: list(locks[key]["blocking_pids"] or []) for key in recent if key in locks
        }

        out: list[dict] = []

        def emit(conn_id: int, blocker: int, blocked: Optional[int], level: int) -> None:
            lock = locks.get((conn_id, blocker), {})
            blocker_s = sessions.get((conn_id, blocker), {})
            blocked_s = sessions.get((conn_id, blocked), {}) if blocked is not None else {}
            row = {
                "connection_id": conn_id,
                "blocking_pid": blocker,
                "blocked_pid": blocked,
                "level": level,
                "blocker_username": blocker_s.get("username"),
                "blocker_application": blocker_s.get("application_name"),
                "blocked_username": blocked_s.get("username"),
                "blocked_application": blocked_s.get("application_name"),
                "locktype": lock.get("locktype"),
                "relation": lock.get("relation"),
                "mode": lock.get("mode"),
            }
            if target_id is None:
                row["connection_name"], row["connection_host"] = names.get(conn_id, (None, None))
            out.append(row)

        def walk(conn_id: int, blocker: int, level: int, seen: set[int]) -> None:
            for child in blocks.get((conn_id, blocker), []):
                emit(conn_id, blocker, child, level + 1)
                if (conn_id, child) in blocks and child not in seen:
                    walk(conn_id, child, level + 1, seen | {child})

        blocked_somewhere = {(c, pid) for (c, _), pids in blocks.items() for pid in pids}
        roots = sorted(k for k in blocks if k not in blocked_somewhere) or sorted(blocks)
        for conn_id, pid in roots:
            emit(conn_id, pid, None, 0)
            walk(conn_id, pid, 0, {pid})
        out.sort(key=lambda r: (r.get("connection_name") or "", r["connection_id"], r["level"], r["blocking_pid"]))
        return out

    # --------------------------------------------------------------- misc

    async def rollback(self) -> None:
        await self._db.rollback()

    async def snapshot_counts(self, target_id: int) -> dict[str, int]:
        counts = {}
        for model in SNAPSHOT_MODELS:
            res = await self._db.execute(
                select(func.count()).select_from(model).where(model.connection_id == target_id)
            )
            counts[model.__tablename__] = res.scalar_one()
        return counts


class MetricsStore:
    """Owns the session factory; every insert is its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *,
                 recent_minutes: int = 5, max_history_hours: int = 720):
        self._session_factory = session_factory
        self._recent_minutes = recent_minutes
        self._max_history_hours = max_history_hours

    def repository(self, session: AsyncSession) -> SqlMetricsRepository:
        return SqlMetricsRepository(
            session, recent_minutes=self._recent_minutes, max_history_hours=self._max_history_hours
        )

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[SqlMetricsRepository]:
        async with self._session_factory() as session:
            yield self.repository(session)

    async def insert(self, model, records: list[dict]) -> int:
        async with self._session_factory() as session:
            return await self.repository(session).insert_snapshots(model, records)
