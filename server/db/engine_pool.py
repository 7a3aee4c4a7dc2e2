# server/db/engine_pool.py
# Engines pointed at monitored targets. One small pool per registered target,
# owned by the ConnectionRegistry and disposed when the target goes away.
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Optional, Protocol
from sqlalchemy import URL, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine

from errors import ConnectionClosedError, classify_connect_error

LOG = logging.getLogger(__name__)


class TargetParams(Protocol):
    host: str
    port: int
    database: str
    username: str
    password: str
    ssl: bool


def build_target_url(params: TargetParams) -> URL:
    return URL.create(
        "postgresql+asyncpg",
        username=params.username,
        password=params.password or None,
        host=params.host,
        port=params.port,
        database=params.database,
    )


class LiveConnection:
    """Runtime handle on one target. Only the registry hands these out."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _engine_or_raise(self) -> AsyncEngine:
        # dispose() leaves a fresh pool behind, so a closed handle must refuse work
        if self._closed:
            raise ConnectionClosedError("connection handle is closed")
        return self._engine

    async def fetch_all(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> list[dict]:
        async with self._engine_or_raise().connect() as conn:
            res = await conn.execute(text(sql), dict(params or {}))
            return [dict(row._mapping) for row in res]

    async def fetch_value(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        async with self._engine_or_raise().connect() as conn:
            res = await conn.execute(text(sql), dict(params or {}))
            return res.scalar()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._engine.dispose()


def create_target_engine(params: TargetParams, connect_timeout: float) -> AsyncEngine:
    connect_args: dict[str, Any] = {"timeout": connect_timeout}
    # asyncpg: "require" encrypts without verifying the server certificate
    connect_args["ssl"] = "require" if params.ssl else False
    return create_async_engine(
        build_target_url(params),
        future=True,
        pool_size=2,
        max_overflow=2,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


async def open_live_connection(params: TargetParams, connect_timeout: float) -> LiveConnection:
    """Open a handle and prove it with SELECT 1; never leaks the engine on failure."""
    conn = LiveConnection(create_target_engine(params, connect_timeout))
    try:
        await conn.fetch_value("SELECT 1")
    except Exception as exc:
        await conn.close()
        raise classify_connect_error(exc) from exc
    return conn


@asynccontextmanager
async def ephemeral_connection(connector, params: TargetParams, connect_timeout: float) -> AsyncIterator[LiveConnection]:
    conn = await connector(params, connect_timeout)
    try:
        yield conn
    finally:
        await conn.close()
        LOG.debug("closed ephemeral connection to %s:%s/%s", params.host, params.port, params.database)
