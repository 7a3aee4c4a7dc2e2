# server/routes/metrics.py
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from collectors import live
from collectors.orchestrator import CollectionOrchestrator
from registry.connections import ConnectionRegistry
from routes.deps import get_metrics_repo, get_orchestrator, get_registry
from storage.metrics_repository import SqlMetricsRepository

LOG = logging.getLogger(__name__)

router = APIRouter()


@router.get("/connections/{connection_id}/version")
async def get_version(
    connection_id: int,
    repo: SqlMetricsRepository = Depends(get_metrics_repo),
    registry: ConnectionRegistry = Depends(get_registry),
    orchestrator: CollectionOrchestrator = Depends(get_orchestrator),
):
    if registry.get(connection_id) is None:
        raise HTTPException(status_code=404, detail="Connection not found or not active")
    version = await repo.latest_version(connection_id)
    if version is None:
        # nothing collected yet; collect it now
        await orchestrator.collect_one(connection_id, only=["version"])
        version = await repo.latest_version(connection_id)
    return {"version": version}


@router.get("/version")
async def get_versions(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.latest_versions()


@router.get("/connections/{connection_id}/sessions")
async def get_sessions(connection_id: int, repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.sessions(connection_id)


@router.get("/sessions")
async def get_all_sessions(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.sessions()


@router.get("/sessions/top")
async def get_top_sessions(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.top_sessions()


@router.get("/connections/{connection_id}/waits")
async def get_waits(connection_id: int, repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.wait_summary(connection_id)


@router.get("/waits")
async def get_all_waits(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.wait_summary()


@router.get("/connections/{connection_id}/locks/blocking")
async def get_blocking(connection_id: int, repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.blocking_tree(connection_id)


@router.get("/locks/blocking")
async def get_all_blocking(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.blocking_tree()


@router.get("/connections/{connection_id}/temp/usage")
async def get_temp_usage(connection_id: int, repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.temp_usage(connection_id)


@router.get("/temp/usage")
async def get_all_temp_usage(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.temp_usage()


@router.get("/connections/{connection_id}/temp/timeline")
async def get_temp_timeline(
    connection_id: int,
    hours: Optional[int] = Query(None, ge=1, description="Trailing window in hours"),
    repo: SqlMetricsRepository = Depends(get_metrics_repo),
):
    return await repo.temp_timeline(connection_id, hours=hours)


@router.get("/temp/timeline")
async def get_all_temp_timeline(
    hours: Optional[int] = Query(None, ge=1),
    repo: SqlMetricsRepository = Depends(get_metrics_repo),
):
    return await repo.temp_timeline(hours=hours)


@router.get("/connections/{connection_id}/queries/stats")
async def get_query_stats(connection_id: int, repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.query_stats(connection_id)


@router.get("/queries/stats")
async def get_all_query_stats(repo: SqlMetricsRepository = Depends(get_metrics_repo)):
    return await repo.query_stats()


@router.get("/connections/{connection_id}/history/sessions")
async def get_session_history(
    connection_id: int,
    hours: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    repo: SqlMetricsRepository = Depends(get_metrics_repo),
):
    return await repo.session_history(connection_id, hours=hours, limit=limit)


@router.get("/history/sessions")
async def get_all_session_history(
    hours: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    repo: SqlMetricsRepository = Depends(get_metrics_repo),
):
    return await repo.session_history(hours=hours, limit=limit)


@router.get("/connections/{connection_id}/stats")
async def get_stats(
    connection_id: int,
    repo: SqlMetricsRepository = Depends(get_metrics_repo),
    registry: ConnectionRegistry = Depends(get_registry),
    orchestrator: CollectionOrchestrator = Depends(get_orchestrator),
):
    """
    Everything the dashboard shows for one connection. Each part is read
    independently; a failing part comes back empty instead of failing the call.
    """
    conn = registry.get(connection_id)
    if conn is None:
        raise HTTPException(status_code=404, detail="Connection not found or not active")

    async def version():
        found = await repo.latest_version(connection_id)
        if found is None:
            await orchestrator.collect_one(connection_id, only=["version"])
            found = await repo.latest_version(connection_id)
        return found or "Unknown"

    parts = {
        "version": (version, "Unknown"),
        "sessions": (lambda: repo.sessions(connection_id), []),
        "cpuUsage": (lambda: repo.cpu_usage(connection_id), []),
        "waitEvents": (lambda: repo.wait_summary(connection_id), []),
        "blockingSessions": (lambda: repo.blocking_tree(connection_id), []),
        "tempUsage": (lambda: repo.temp_usage(connection_id), []),
        "databaseSize": (lambda: live.database_size(conn), "Unknown"),
        "tableSizes": (lambda: live.table_sizes(conn), []),
        "queryStats": (lambda: repo.query_stats(connection_id, limit=20), []),
        "extensions": (lambda: live.list_extensions(conn), []),
    }
    stats = {}
    for key, (read, fallback) in parts.items():
        try:
            stats[key] = await read()
        except Exception as e:
            LOG.error("Error getting %s for connection %d: %s", key, connection_id, e)
            await repo.rollback()
            stats[key] = fallback
    return {"success": True, "stats": stats, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/stats/{connection_id}")
async def get_stats_alias(connection_id: int):
    return RedirectResponse(url=f"/api/connections/{connection_id}/stats")
