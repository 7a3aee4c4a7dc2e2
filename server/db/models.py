# server/db/models.py
# One append-only table per snapshot variant. Every row points at its
# registration with ON DELETE CASCADE; rows are never updated.
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text

from registry.models import Base


def _target_fk() -> Mapped[int]:
    return mapped_column(
        Integer, ForeignKey("database_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )


def _collected_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), nullable=False, index=True)


class VersionSnapshot(Base):
    __tablename__ = "pg_version"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = _target_fk()
    version: Mapped[str] = mapped_column(Text, nullable=False)
    collected_at: Mapped[datetime] = _collected_at()


class SessionSnapshot(Base):
    __tablename__ = "session_metrics"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = _target_fk()
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    application_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    database_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    client_addr: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    backend_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    query_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # even split of 100% across active sessions, not sampled CPU
    cpu_usage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    collected_at: Mapped[datetime] = _collected_at()


class WaitEventSnapshot(Base):
    __tablename__ = "wait_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = _target_fk()
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    wait_event_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    wait_event: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    wait_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)   # seconds
    collected_at: Mapped[datetime] = _collected_at()


class LockSnapshot(Base):
    __tablename__ = "lock_info"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = _target_fk()
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    locktype: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    relation: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    mode: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    blocking_pids: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True), nullable=True)   # list[int] of pids this row blocks
    collected_at: Mapped[datetime] = _collected_at()


class TempUsageSnapshot(Base):
    __tablename__ = "temp_usage"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = _target_fk()
    pid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    database_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    temp_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    query_type: Mapped[str] = mapped_column(String, nullable=False)
    collected_at: Mapped[datetime] = _collected_at()


class QueryStatSnapshot(Base):
    __tablename__ = "query_stats"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = _target_fk()
    query_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    query: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    calls: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    min_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    mean_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rows: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    collected_at: Mapped[datetime] = _collected_at()


SNAPSHOT_MODELS = (
    VersionSnapshot,
    SessionSnapshot,
    WaitEventSnapshot,
    LockSnapshot,
    TempUsageSnapshot,
    QueryStatSnapshot,
)
