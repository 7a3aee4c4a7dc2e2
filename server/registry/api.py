# server/registry/api.py
# Persistent side of the registry: rows in database_connections.
from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, update
from .models import TargetConnection


def target_to_dict(row: TargetConnection) -> dict:
    return {
        "id": row.id, "name": row.name, "host": row.host, "port": row.port,
        "database": row.database, "username": row.username, "ssl": bool(row.ssl),
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "last_connected_at": row.last_connected_at.isoformat() if row.last_connected_at else None,
    }

async def list_targets(db: AsyncSession) -> list[TargetConnection]:
    res = await db.execute(select(TargetConnection).order_by(TargetConnection.name, TargetConnection.id))
    return list(res.scalars())

async def get_target(db: AsyncSession, target_id: int) -> Optional[TargetConnection]:
    return await db.get(TargetConnection, target_id)

async def find_target_by_address(db: AsyncSession, host: str, port: int, database: str) -> Optional[TargetConnection]:
    res = await db.execute(
        select(TargetConnection)
        .where((TargetConnection.host == host) & (TargetConnection.port == port) & (TargetConnection.database == database))
        .limit(1)
    )
    return res.scalar_one_or_none()

async def insert_target(db: AsyncSession, *, name: str, host: str, port: int, database: str,
                        username: str, password_token: str, ssl: bool,
                        last_connected_at: Optional[datetime] = None) -> TargetConnection:
    row = TargetConnection(
        name=name, host=host, port=port, database=database, username=username,
        password=password_token, ssl=ssl, last_connected_at=last_connected_at,
    )
    db.add(row)
    await db.commit()
    await db.refresh(row)
    return row

async def update_target(db: AsyncSession, target_id: int, **values) -> Optional[TargetConnection]:
    row = await db.get(TargetConnection, target_id)
    if row is None:
        return None
    for key, value in values.items():
        setattr(row, key, value)
    await db.commit()
    await db.refresh(row)
    return row

async def touch_last_connected(db: AsyncSession, target_id: int, when: Optional[datetime] = None) -> None:
    await db.execute(
        update(TargetConnection)
        .where(TargetConnection.id == target_id)
        .values(last_connected_at=when or datetime.now(timezone.utc))
    )
    await db.commit()

async def delete_target(db: AsyncSession, target_id: int) -> bool:
    # core DELETE so the database-level ON DELETE CASCADE removes the snapshots
    res = await db.execute(delete(TargetConnection).where(TargetConnection.id == target_id))
    await db.commit()
    return bool(res.rowcount)
