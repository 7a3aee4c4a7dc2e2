# server/collectors/scheduler.py
from __future__ import annotations
import asyncio
import logging
from typing import Optional

from .orchestrator import CollectionOrchestrator

LOG = logging.getLogger(__name__)


class CollectionScheduler:
    """Fires collect_all() on a fixed period as a background asyncio task."""

    def __init__(self, orchestrator: CollectionOrchestrator, interval_seconds: float = 60.0):
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="metrics-collection")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self._orchestrator.collect_all()
            except Exception:
                LOG.exception("Metrics collection cycle failed")
            self.cycles += 1
            # keep a fixed cadence; a slow cycle starts the next one right away
            await asyncio.sleep(max(0.0, self._interval - (loop.time() - started)))
