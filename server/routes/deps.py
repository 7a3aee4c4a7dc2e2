# server/routes/deps.py
from typing import AsyncIterator
from fastapi import Request

from collectors.orchestrator import CollectionOrchestrator
from registry.connections import ConnectionRegistry
from storage.metrics_repository import SqlMetricsRepository


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> CollectionOrchestrator:
    return request.app.state.orchestrator


async def get_metrics_repo(request: Request) -> AsyncIterator[SqlMetricsRepository]:
    async with request.app.state.metrics_store.reader() as repo:
        yield repo
