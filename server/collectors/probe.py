# server/collectors/probe.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from db.engine_pool import LiveConnection
from errors import ProbeError

LOG = logging.getLogger(__name__)

WAIT_SAMPLING = "pg_wait_sampling"
STAT_STATEMENTS = "pg_stat_statements"

_EXTENSION_SQL = "SELECT 1 FROM pg_extension WHERE extname = :name"


@dataclass(frozen=True)
class ProbeResult:
    extension: str
    installed: bool
    error: Optional[ProbeError] = None


class ExtensionProbe:
    """Checks pg_extension on every call; nothing is cached between cycles."""

    async def check(self, conn: LiveConnection, extension: str) -> ProbeResult:
        try:
            rows = await conn.fetch_all(_EXTENSION_SQL, {"name": extension})
        except Exception as exc:
            err = ProbeError(extension)
            err.__cause__ = exc
            LOG.error("Error checking for extension %s: %s", extension, exc)
            return ProbeResult(extension, False, err)
        return ProbeResult(extension, bool(rows))

    async def has_extension(self, conn: LiveConnection, extension: str) -> bool:
        return (await self.check(conn, extension)).installed
