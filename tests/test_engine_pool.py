"""LiveConnection behaviour on a real async engine (SQLite stands in for a target)."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from collectors.version import VersionCollector
from db.engine_pool import LiveConnection, build_target_url, ephemeral_connection
from errors import CollectorError, ConnectionClosedError
from registry.connections import TargetConfig


@pytest.fixture
async def live(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'target.db'}")
    conn = LiveConnection(engine)
    yield conn
    await conn.close()


async def test_fetch_on_open_handle(live) -> None:
    assert await live.fetch_value("SELECT 1") == 1
    assert await live.fetch_all("SELECT 2 AS n") == [{"n": 2}]


async def test_closed_handle_refuses_queries(live) -> None:
    await live.close()

    with pytest.raises(ConnectionClosedError):
        await live.fetch_value("SELECT 1")
    with pytest.raises(ConnectionClosedError):
        await live.fetch_all("SELECT 1")
    assert live.closed is True


async def test_close_is_idempotent(live) -> None:
    await live.close()
    await live.close()

    assert live.closed is True


async def test_collector_on_closed_handle_fails_cleanly(live) -> None:
    # a handle closed by remove/update while a cycle still holds it
    await live.close()

    with pytest.raises(CollectorError) as info:
        await VersionCollector(store=None).run(1, live, datetime.now(timezone.utc))

    assert isinstance(info.value.__cause__, ConnectionClosedError)


async def test_ephemeral_connection_closes_after_use(live) -> None:
    async def connector(params, timeout):
        return live

    config = TargetConfig(name="t", host="db1.internal", database="app", username="monitor")
    async with ephemeral_connection(connector, config, 3.0) as conn:
        assert await conn.fetch_value("SELECT 1") == 1

    assert live.closed is True


def test_build_target_url() -> None:
    config = TargetConfig(host="db1.internal", port=6432, database="app", username="monitor", password="p@ss")

    url = build_target_url(config)

    assert url.drivername == "postgresql+asyncpg"
    assert (url.host, url.port, url.database, url.username) == ("db1.internal", 6432, "app", "monitor")
    assert url.password == "p@ss"
