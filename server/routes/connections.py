# server/routes/connections.py
from __future__ import annotations
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import Field

from collectors.live import list_extensions
from collectors.orchestrator import CollectionOrchestrator
from errors import TargetConnectionError
from registry.connections import ConnectionRegistry, TargetConfig
from routes.deps import get_orchestrator, get_registry

LOG = logging.getLogger(__name__)

router = APIRouter()


class ConnectionTestBody(TargetConfig):
    id: Optional[int] = None
    use_existing_password: bool = Field(False, alias="useExistingPassword")


def _live_or_404(registry: ConnectionRegistry, connection_id: int):
    conn = registry.get(connection_id)
    if conn is None:
        raise HTTPException(status_code=404, detail="Connection not found or not active")
    return conn


@router.get("/connections")
async def get_connections(
    check: bool = Query(False, description="Test each connection and report its status"),
    registry: ConnectionRegistry = Depends(get_registry),
):
    return await registry.list(check=check)


@router.post("/connections", status_code=201)
async def add_connection(config: TargetConfig, registry: ConnectionRegistry = Depends(get_registry)):
    try:
        connection_id = await registry.register(config)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return registry.info(connection_id)


@router.put("/connections/{connection_id}")
async def edit_connection(connection_id: int, config: TargetConfig,
                          registry: ConnectionRegistry = Depends(get_registry)):
    return await registry.update(connection_id, config)


@router.delete("/connections/{connection_id}", status_code=204)
async def remove_connection(connection_id: int, registry: ConnectionRegistry = Depends(get_registry)):
    await registry.remove(connection_id)
    return Response(status_code=204)


@router.post("/connections/test")
async def test_connection(body: ConnectionTestBody, registry: ConnectionRegistry = Depends(get_registry)):
    existing_id = body.id if body.use_existing_password else None
    config = TargetConfig(**body.model_dump(include=set(TargetConfig.model_fields)))
    try:
        version = await registry.test_ephemeral(config, existing_id=existing_id)
    except TargetConnectionError as e:
        LOG.error("Connection test failed: %s", e)
        return JSONResponse(status_code=400, content={
            "success": False, "message": "Connection failed", "error": str(e), "category": e.category.value,
        })
    return {"success": True, "message": "Connection successful", "version": version}


@router.get("/connections/{connection_id}/extensions")
async def get_extensions(connection_id: int, registry: ConnectionRegistry = Depends(get_registry)):
    conn = _live_or_404(registry, connection_id)
    return await list_extensions(conn)


@router.get("/extensions")
async def get_all_extensions(registry: ConnectionRegistry = Depends(get_registry)):
    out = []
    for connection_id, conn in registry.live_targets():
        info = registry.info(connection_id) or {}
        try:
            extensions = await list_extensions(conn)
        except Exception as e:
            LOG.error("Error getting extensions for connection ID: %d: %s", connection_id, e)
            continue
        out.append({
            "connection_id": connection_id,
            "connection_name": info.get("name"),
            "connection_host": info.get("host"),
            "extensions": extensions,
        })
    return out


@router.post("/connections/{connection_id}/refresh")
async def refresh_connection(connection_id: int, orchestrator: CollectionOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.collect_one(connection_id)
    return {"success": True, "message": "Metrics refreshed", "stored": report.stored, "failed": report.failed}


@router.post("/refresh")
async def refresh_all(orchestrator: CollectionOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.collect_all()
    return {
        "success": True,
        "message": "All metrics refreshed",
        "targets": [{"connection_id": t.target_id, "stored": t.stored, "failed": t.failed} for t in report.targets],
    }
