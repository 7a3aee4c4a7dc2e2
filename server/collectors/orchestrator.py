# server/collectors/orchestrator.py
"""Runs the collectors against every live target.

Targets are collected as independent asyncio tasks (bounded by a
semaphore); within a target the collectors run one after another in a
fixed order so a single server never sees more than one monitoring query
at a time. A failing collector only forfeits its own rows for the cycle.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from db.engine_pool import LiveConnection
from errors import CollectorError, StoreError, TargetNotFoundError
from registry.connections import ConnectionRegistry
from storage.metrics_repository import MetricsStore
from .base import MetricCollector
from .locks import LockCollector
from .probe import ExtensionProbe
from .query_stats import QueryStatCollector
from .sessions import SessionCollector
from .temp_usage import TempUsageCollector
from .version import VersionCollector
from .waits import WaitEventCollector

LOG = logging.getLogger(__name__)

COLLECTOR_ORDER = (
    VersionCollector,
    SessionCollector,
    WaitEventCollector,
    LockCollector,
    TempUsageCollector,
    QueryStatCollector,
)


def default_collectors(store: MetricsStore, probe: Optional[ExtensionProbe] = None) -> list[MetricCollector]:
    probe = probe or ExtensionProbe()
    return [cls(store, probe) for cls in COLLECTOR_ORDER]


@dataclass
class TargetReport:
    target_id: int
    collected_at: datetime
    stored: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class CycleReport:
    started_at: datetime
    targets: list[TargetReport] = field(default_factory=list)

    def for_target(self, target_id: int) -> Optional[TargetReport]:
        return next((t for t in self.targets if t.target_id == target_id), None)


class CollectionOrchestrator:
    def __init__(
        self,
        registry: ConnectionRegistry,
        collectors: Sequence[MetricCollector],
        *,
        concurrency: int = 4,
    ):
        self._registry = registry
        self._collectors = list(collectors)
        self._concurrency = max(1, concurrency)

    @property
    def collector_names(self) -> list[str]:
        return [c.name for c in self._collectors]

    async def collect_all(self) -> CycleReport:
        report = CycleReport(started_at=datetime.now(timezone.utc))
        targets = self._registry.live_targets()
        if not targets:
            return report
        sem = asyncio.Semaphore(self._concurrency)

        async def _bounded(target_id: int, conn: LiveConnection) -> TargetReport:
            async with sem:
                return await self._collect_target(target_id, conn, self._collectors)

        results = await asyncio.gather(*(_bounded(tid, conn) for tid, conn in targets), return_exceptions=True)
        for (target_id, _), result in zip(targets, results):
            if isinstance(result, BaseException):
                # _collect_target contains collector errors; this is a bug path
                LOG.error("Error collecting metrics for connection ID: %d", target_id, exc_info=result)
                report.targets.append(TargetReport(target_id, report.started_at, failed={"*": repr(result)}))
            else:
                report.targets.append(result)
        return report

    async def collect_one(self, target_id: int, only: Optional[Iterable[str]] = None) -> TargetReport:
        """On-demand refresh of one live target, optionally limited to named collectors."""
        conn = self._registry.get(target_id)
        if conn is None:
            raise TargetNotFoundError(target_id)
        collectors = self._collectors
        if only is not None:
            wanted = set(only)
            collectors = [c for c in self._collectors if c.name in wanted]
        return await self._collect_target(target_id, conn, collectors)

    async def _collect_target(
        self, target_id: int, conn: LiveConnection, collectors: Sequence[MetricCollector]
    ) -> TargetReport:
        report = TargetReport(target_id, datetime.now(timezone.utc))
        for collector in collectors:
            try:
                report.stored[collector.name] = await collector.run(target_id, conn, report.collected_at)
            except (CollectorError, StoreError) as exc:
                LOG.error("%s", exc, exc_info=exc.__cause__)
                report.failed[collector.name] = str(exc.__cause__ or exc)
            except Exception as exc:
                LOG.exception("Unexpected error in %s for connection ID: %d", collector.name, target_id)
                report.failed[collector.name] = str(exc)
        if report.ok:
            LOG.info("Collected all metrics for connection ID: %d", target_id)
        else:
            LOG.warning("Collected metrics for connection ID: %d with %d failed collectors: %s",
                        target_id, len(report.failed), ", ".join(sorted(report.failed)))
        return report
