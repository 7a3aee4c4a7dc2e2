# server/collectors/version.py
from __future__ import annotations

from db.engine_pool import LiveConnection
from db.models import VersionSnapshot
from .base import Full, MetricCollector


class VersionCollector(MetricCollector):
    name = "version"
    snapshot_model = VersionSnapshot

    async def collect(self, target_id: int, conn: LiveConnection) -> Full:
        version = await conn.fetch_value("SELECT version()")
        return Full(({"version": str(version)},))
