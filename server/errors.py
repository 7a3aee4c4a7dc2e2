# server/errors.py
from __future__ import annotations
import asyncio
import ssl
from enum import Enum
from typing import Iterator, Optional

import asyncpg

# SQLSTATE codes the driver reports for credential and catalog problems
_AUTH_SQLSTATES = {"28000", "28P01"}
_MISSING_DB_SQLSTATES = {"3D000"}


class MonitorError(Exception):
    """Base class for every error raised by the monitoring core."""


class ConnectionCategory(str, Enum):
    AUTH_FAILED = "auth_failed"
    HOST_UNREACHABLE = "host_unreachable"
    DATABASE_MISSING = "database_missing"
    TIMEOUT = "timeout"
    TLS_ERROR = "tls_error"
    UNKNOWN = "unknown"


_CATEGORY_TEXT = {
    ConnectionCategory.AUTH_FAILED: "authentication failed",
    ConnectionCategory.HOST_UNREACHABLE: "host unreachable",
    ConnectionCategory.DATABASE_MISSING: "database does not exist",
    ConnectionCategory.TIMEOUT: "connection timed out",
    ConnectionCategory.TLS_ERROR: "TLS negotiation failed",
    ConnectionCategory.UNKNOWN: "connection failed",
}


class TargetConnectionError(MonitorError):
    """A target could not be reached or refused our credentials."""

    def __init__(self, category: ConnectionCategory, detail: str = ""):
        self.category = category
        self.detail = detail
        message = _CATEGORY_TEXT[category]
        super().__init__(f"{message}: {detail}" if detail else message)


class ConnectionClosedError(MonitorError):
    """A query was issued on a LiveConnection after it was closed."""


class TargetNotFoundError(MonitorError):
    def __init__(self, target_id: int):
        self.target_id = target_id
        super().__init__(f"connection {target_id} not found")


class CollectorError(MonitorError):
    """A collector's query against the target failed."""

    def __init__(self, collector: str, target_id: int):
        self.collector = collector
        self.target_id = target_id
        super().__init__(f"{collector} collection failed for connection {target_id}")


class StoreError(MonitorError):
    """Collected rows could not be written to the metrics store."""

    def __init__(self, collector: str, target_id: int):
        self.collector = collector
        self.target_id = target_id
        super().__init__(f"{collector} rows could not be stored for connection {target_id}")


class ProbeError(MonitorError):
    def __init__(self, extension: str):
        self.extension = extension
        super().__init__(f"could not check extension {extension}")


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    pending: list[Optional[BaseException]] = [exc]
    while pending:
        cur = pending.pop()
        if cur is None or id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur
        # sqlalchemy.exc.DBAPIError keeps the driver error on .orig
        pending.extend([getattr(cur, "orig", None), cur.__cause__, cur.__context__])


def _is_tls_failure(exc: BaseException) -> bool:
    if isinstance(exc, ssl.SSLError):
        return True
    # asyncpg reports a refused SSLRequest as a plain ConnectionError
    return isinstance(exc, ConnectionError) and "SSL" in str(exc)


def classify_connect_error(exc: BaseException) -> TargetConnectionError:
    """Map a driver/SQLAlchemy exception into a TargetConnectionError.

    The whole chain is searched for a specific cause before falling back to
    HOST_UNREACHABLE for a bare socket error.
    """
    if isinstance(exc, TargetConnectionError):
        return exc
    chain = list(_chain(exc))
    category = ConnectionCategory.UNKNOWN
    for cur in chain:
        sqlstate = getattr(cur, "sqlstate", None) or getattr(cur, "pgcode", None)
        if isinstance(cur, (asyncpg.InvalidPasswordError, asyncpg.InvalidAuthorizationSpecificationError)) \
                or sqlstate in _AUTH_SQLSTATES:
            category = ConnectionCategory.AUTH_FAILED
            break
        if isinstance(cur, asyncpg.InvalidCatalogNameError) or sqlstate in _MISSING_DB_SQLSTATES:
            category = ConnectionCategory.DATABASE_MISSING
            break
        if isinstance(cur, (asyncio.TimeoutError, TimeoutError)):
            category = ConnectionCategory.TIMEOUT
            break
        if _is_tls_failure(cur):
            category = ConnectionCategory.TLS_ERROR
            break
    else:
        if any(isinstance(cur, OSError) for cur in chain):
            category = ConnectionCategory.HOST_UNREACHABLE
    return TargetConnectionError(category, str(exc) or exc.__class__.__name__)
