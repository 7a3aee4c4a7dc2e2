# server/collectors/base.py
"""Shared shape of the six metric collectors.

A collector reads one target and returns either ``Full`` rows (the rich
query ran) or ``Degraded`` rows (an optional extension was missing and the
fallback ran, possibly producing nothing). ``store`` accepts both and writes
one snapshot row per normalized record.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar, Optional, Union

from db.engine_pool import LiveConnection
from errors import CollectorError, StoreError
from storage.metrics_repository import MetricsStore
from .probe import ExtensionProbe

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class Full:
    rows: tuple[dict, ...] = ()


@dataclass(frozen=True)
class Degraded:
    rows: tuple[dict, ...] = ()
    reason: str = ""
    skipped: bool = field(default=False)


CollectedRows = Union[Full, Degraded]


class MetricCollector:
    name: ClassVar[str]
    snapshot_model: ClassVar[type]

    def __init__(self, store: MetricsStore, probe: Optional[ExtensionProbe] = None):
        self._store = store
        self._probe = probe or ExtensionProbe()

    async def collect(self, target_id: int, conn: LiveConnection) -> CollectedRows:
        raise NotImplementedError

    def records(self, target_id: int, result: CollectedRows, collected_at: datetime) -> list[dict]:
        if isinstance(result, Full):
            rows = result.rows
        elif isinstance(result, Degraded):
            if result.skipped:
                return []
            rows = result.rows
        else:
            raise TypeError(f"unexpected collector result {type(result).__name__}")
        return [{**row, "connection_id": target_id, "collected_at": collected_at} for row in rows]

    async def store(self, target_id: int, result: CollectedRows, collected_at: Optional[datetime] = None) -> int:
        records = self.records(target_id, result, collected_at or datetime.now(timezone.utc))
        if not records:
            return 0
        return await self._store.insert(self.snapshot_model, records)

    async def run(self, target_id: int, conn: LiveConnection, collected_at: datetime) -> int:
        """collect + store; raises CollectorError/StoreError, never anything else."""
        try:
            result = await self.collect(target_id, conn)
        except Exception as exc:
            raise CollectorError(self.name, target_id) from exc
        if isinstance(result, Degraded):
            level = logging.WARNING if result.skipped else logging.INFO
            LOG.log(level, "%s for connection %d degraded: %s", self.name, target_id, result.reason)
        try:
            stored = await self.store(target_id, result, collected_at)
        except Exception as exc:
            raise StoreError(self.name, target_id) from exc
        LOG.info("Collected %d %s rows for connection ID: %d", stored, self.name, target_id)
        return stored
