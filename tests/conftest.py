"""Shared fixtures: a real SQLite metrics store and fake target connections."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

import pytest

from errors import TargetConnectionError
from registry.api import insert_target
from registry.connections import ConnectionRegistry
from registry.session import create_metrics_engine, create_session_factory, create_tables
from storage.metrics_repository import MetricsStore
from utils.crypto import PasswordCipher

# Ordered: the first marker found in the SQL decides which canned result answers it.
QUERY_MARKERS = (
    ("probe", "FROM pg_extension WHERE extname"),
    ("extensions", "FROM pg_extension e"),
    ("version", "SELECT version()"),
    ("locks", "pg_locks"),
    ("temp_full", "pg_ls_tmpdir"),
    ("query_stats", "FROM pg_stat_statements"),
    ("waits_full", "pg_wait_sampling_history"),
    ("waits", "wait_event IS NOT NULL"),
    ("sessions", "client_addr"),
    ("temp_degraded", "a.state = 'active'"),
    ("db_size", "pg_database_size"),
    ("table_sizes", "pg_stat_user_tables"),
    ("ping", "SELECT 1"),
)


def _kind(sql: str) -> str:
    for kind, marker in QUERY_MARKERS:
        if marker in sql:
            return kind
    raise AssertionError(f"unexpected query: {sql}")


class FakeLiveConnection:
    """Stands in for db.engine_pool.LiveConnection; answers by query kind."""

    def __init__(
        self,
        rows: Mapping[str, list[dict]] | None = None,
        *,
        extensions: tuple[str, ...] = (),
        version: str = "PostgreSQL 16.2 on x86_64-pc-linux-gnu",
        failures: Mapping[str, Exception] | None = None,
    ) -> None:
        self.rows = dict(rows or {})
        self.extensions = set(extensions)
        self.version = version
        self.failures = dict(failures or {})
        self.queries: list[str] = []
        self.closed = False

    def _check(self, kind: str) -> None:
        self.queries.append(kind)
        if kind in self.failures:
            raise self.failures[kind]

    async def fetch_all(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict]:
        kind = _kind(sql)
        self._check(kind)
        if kind == "probe":
            return [{"?column?": 1}] if (params or {}).get("name") in self.extensions else []
        return [dict(r) for r in self.rows.get(kind, [])]

    async def fetch_value(self, sql: str, params: Mapping[str, Any] | None = None) -> Any:
        kind = _kind(sql)
        self._check(kind)
        if kind == "version":
            return self.version
        if kind == "ping":
            return 1
        if kind == "db_size":
            return "42 MB"
        return None

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Connector double: records every handle it opens and can refuse hosts."""

    def __init__(self, factory: Callable[[Any], FakeLiveConnection] | None = None) -> None:
        self.factory = factory or (lambda params: FakeLiveConnection())
        self.refuse: dict[str, TargetConnectionError] = {}
        self.opened: list[FakeLiveConnection] = []
        self.calls: list[tuple[Any, float]] = []

    async def __call__(self, params: Any, timeout: float) -> FakeLiveConnection:
        self.calls.append((params, timeout))
        if params.host in self.refuse:
            raise self.refuse[params.host]
        conn = self.factory(params)
        self.opened.append(conn)
        return conn

    @property
    def open_handles(self) -> list[FakeLiveConnection]:
        return [c for c in self.opened if not c.closed]


@pytest.fixture
async def metrics_engine(tmp_path: Path):
    engine = create_metrics_engine(f"sqlite+aiosqlite:///{tmp_path / 'metrics.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(metrics_engine):
    return create_session_factory(metrics_engine)


@pytest.fixture
def store(session_factory) -> MetricsStore:
    return MetricsStore(session_factory)


@pytest.fixture
def cipher() -> PasswordCipher:
    return PasswordCipher("test-secret")


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def registry(session_factory, cipher, connector) -> ConnectionRegistry:
    return ConnectionRegistry(session_factory, cipher, connector=connector, register_timeout=5.0, test_timeout=3.0)


@pytest.fixture
def add_target(session_factory, cipher):
    """Insert a registration row directly (no live connection)."""

    async def _add(name: str = "primary", host: str = "db1.internal") -> int:
        async with session_factory() as db:
            row = await insert_target(
                db, name=name, host=host, port=5432, database="app", username="monitor",
                password_token=cipher.encrypt("s3cret"), ssl=False,
            )
        return row.id

    return _add


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
