# server/registry/connections.py
"""In-memory registry of live target connections backed by database_connections.

The registry is the only owner of LiveConnection handles: it opens them on
registration/startup, swaps them on update, and closes them on removal or
shutdown. Register/update/remove for one id are serialized with a per-id lock
so a close-then-delete sequence never interleaves with another mutation.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.engine_pool import LiveConnection, TargetParams, ephemeral_connection, open_live_connection
from errors import TargetConnectionError, TargetNotFoundError, classify_connect_error
from utils.crypto import PasswordCipher
from .api import (
    delete_target, find_target_by_address, get_target, insert_target,
    list_targets, target_to_dict, touch_last_connected, update_target,
)
from .models import TargetConnection

LOG = logging.getLogger(__name__)

Connector = Callable[[TargetParams, float], Awaitable[LiveConnection]]


class TargetConfig(BaseModel):
    """Connection parameters as supplied by a user or a seed file."""

    name: str = ""
    host: str = Field(..., min_length=1)
    port: int = Field(5432, ge=1, le=65535)
    database: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = ""
    ssl: bool = False


@dataclass
class RegisteredTarget:
    connection: LiveConnection
    info: dict


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: PasswordCipher,
        *,
        connector: Connector = open_live_connection,
        register_timeout: float = 5.0,
        test_timeout: float = 3.0,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._connector = connector
        self._register_timeout = register_timeout
        self._test_timeout = test_timeout
        self._live: dict[int, RegisteredTarget] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock(self, target_id: int) -> asyncio.Lock:
        return self._locks.setdefault(target_id, asyncio.Lock())

    def _config_from_row(self, row: TargetConnection) -> TargetConfig:
        return TargetConfig(
            name=row.name, host=row.host, port=row.port, database=row.database,
            username=row.username, password=self._cipher.decrypt(row.password), ssl=bool(row.ssl),
        )

    # ------------------------------------------------------------------ reads

    def get(self, target_id: int) -> Optional[LiveConnection]:
        entry = self._live.get(target_id)
        return entry.connection if entry else None

    def info(self, target_id: int) -> Optional[dict]:
        entry = self._live.get(target_id)
        return dict(entry.info) if entry else None

    def live_targets(self) -> list[tuple[int, LiveConnection]]:
        # copy: callers iterate across suspension points
        return [(tid, entry.connection) for tid, entry in self._live.items()]

    async def list(self, check: bool = False) -> list[dict]:
        async with self._session_factory() as db:
            rows = await list_targets(db)
        out = []
        for row in rows:
            item = target_to_dict(row)
            item["live"] = row.id in self._live
            out.append(item)
        if check:
            results = await asyncio.gather(*(self.check(item["id"]) for item in out), return_exceptions=True)
            for item, ok in zip(out, results):
                item["status"] = "Connected" if ok is True else "Disconnected"
        return out

    # -------------------------------------------------------------- lifecycle

    async def load(self) -> int:
        """Open every stored registration. Failures leave the target registered but not live."""
        async with self._session_factory() as db:
            rows = await list_targets(db)
        for row in rows:
            try:
                config = self._config_from_row(row)
                conn = await self._connector(config, self._register_timeout)
            except (TargetConnectionError, ValueError) as exc:
                LOG.error("Could not connect to %s (%s:%s/%s): %s", row.name, row.host, row.port, row.database, exc)
                continue
            self._live[row.id] = RegisteredTarget(conn, target_to_dict(row))
            async with self._session_factory() as db:
                await touch_last_connected(db, row.id)
            LOG.info("Connected to database: %s (%s:%s/%s)", row.name, row.host, row.port, row.database)
        LOG.info("Loaded %d saved database connections (%d live)", len(rows), len(self._live))
        return len(self._live)

    async def seed(self, entries: list[dict]) -> list[int]:
        """Register seed entries whose (host, port, database) is not registered yet."""
        added = []
        for entry in entries:
            try:
                config = TargetConfig(**entry)
            except ValidationError as exc:
                LOG.error("Ignoring invalid seed target %r: %s", entry.get("name"), exc)
                continue
            async with self._session_factory() as db:
                existing = await find_target_by_address(db, config.host, config.port, config.database)
            if existing is not None:
                continue
            try:
                added.append(await self.register(config))
            except (TargetConnectionError, ValueError) as exc:
                LOG.error("Error adding seed target %s: %s", config.name, exc)
        return added

    async def register(self, config: TargetConfig) -> int:
        if not config.name or not config.password:
            raise ValueError("name and password are required to register a connection")
        conn = await self._connector(config, self._register_timeout)
        try:
            async with self._session_factory() as db:
                row = await insert_target(
                    db, name=config.name, host=config.host, port=config.port,
                    database=config.database, username=config.username,
                    password_token=self._cipher.encrypt(config.password),
                    ssl=config.ssl, last_connected_at=_now(),
                )
        except Exception:
            await conn.close()
            raise
        async with self._lock(row.id):
            self._live[row.id] = RegisteredTarget(conn, target_to_dict(row))
        LOG.info("Registered connection %d: %s (%s:%s/%s)", row.id, config.name, config.host, config.port, config.database)
        return row.id

    async def update(self, target_id: int, config: TargetConfig) -> dict:
        async with self._lock(target_id):
            async with self._session_factory() as db:
                row = await get_target(db, target_id)
            if row is None:
                raise TargetNotFoundError(target_id)

            keep_password = not config.password.strip()
            password = self._cipher.decrypt(row.password) if keep_password else config.password
            merged = config.model_copy(update={"password": password, "name": config.name or row.name})

            # the new handle must work before the old one is given up
            new_conn = await self._connector(merged, self._register_timeout)
            try:
                async with self._session_factory() as db:
                    row = await update_target(
                        db, target_id,
                        name=merged.name, host=merged.host, port=merged.port,
                        database=merged.database, username=merged.username, ssl=merged.ssl,
                        password=row.password if keep_password else self._cipher.encrypt(password),
                        last_connected_at=_now(),
                    )
            except Exception:
                await new_conn.close()
                raise
            if row is None:
                await new_conn.close()
                raise TargetNotFoundError(target_id)
            # swap only once the new record is stored; a failed write keeps the old handle live
            old = self._live.pop(target_id, None)
            info = target_to_dict(row)
            self._live[target_id] = RegisteredTarget(new_conn, info)
            if old is not None:
                await old.connection.close()
        LOG.info("Updated connection %d", target_id)
        return info

    async def remove(self, target_id: int) -> None:
        async with self._lock(target_id):
            entry = self._live.pop(target_id, None)
            if entry is not None:
                await entry.connection.close()
            async with self._session_factory() as db:
                deleted = await delete_target(db, target_id)
        self._locks.pop(target_id, None)
        if not deleted:
            raise TargetNotFoundError(target_id)
        LOG.info("Removed connection %d and its snapshots", target_id)

    async def test_ephemeral(self, config: TargetConfig, existing_id: Optional[int] = None) -> str:
        """Connect with a throwaway handle, return version(); the handle is always closed."""
        if existing_id is not None and not config.password.strip():
            async with self._session_factory() as db:
                row = await get_target(db, existing_id)
            if row is None:
                raise TargetNotFoundError(existing_id)
            config = config.model_copy(update={"password": self._cipher.decrypt(row.password)})

        async with ephemeral_connection(self._connector, config, self._test_timeout) as conn:
            try:
                return str(await conn.fetch_value("SELECT version()"))
            except Exception as exc:
                raise classify_connect_error(exc) from exc

    async def check(self, target_id: int) -> bool:
        """Test a registered target with its stored credentials; stamps last_connected_at on success."""
        async with self._session_factory() as db:
            row = await get_target(db, target_id)
        if row is None:
            raise TargetNotFoundError(target_id)
        try:
            await self.test_ephemeral(self._config_from_row(row))
        except TargetConnectionError as exc:
            LOG.error("Connection test failed for %s: %s", row.name, exc)
            return False
        async with self._session_factory() as db:
            await touch_last_connected(db, target_id)
        return True

    async def close_all(self) -> None:
        entries = list(self._live.values())
        self._live.clear()
        for entry in entries:
            await entry.connection.close()
