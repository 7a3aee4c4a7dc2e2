# server/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, load_seed_targets
from collectors.orchestrator import CollectionOrchestrator, default_collectors
from collectors.scheduler import CollectionScheduler
from db.engine_pool import open_live_connection
from errors import TargetConnectionError, TargetNotFoundError
from registry.connections import ConnectionRegistry, Connector
from registry.session import create_metrics_engine, create_session_factory, create_tables
from storage.metrics_repository import MetricsStore
from utils.crypto import PasswordCipher
from utils.log import configure_logging

from routes.connections import router as connections_router
from routes.metrics import router as metrics_router

LOG = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, *, connector: Connector = open_live_connection,
               start_scheduler: bool = True, setup_logging: bool = True) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- startup ---
        if setup_logging:
            configure_logging(settings.log_level, settings.log_dir)
        cipher = PasswordCipher(settings.require_secret())

        # 1) metrics store + registration tables
        engine = create_metrics_engine(settings.metrics_database_url, echo=settings.sql_echo)
        await create_tables(engine)
        session_factory = create_session_factory(engine)
        store = MetricsStore(
            session_factory,
            recent_minutes=settings.recent_window_minutes,
            max_history_hours=settings.max_history_hours,
        )

        # 2) reopen saved connections, then seed any configured ones
        registry = ConnectionRegistry(
            session_factory, cipher,
            connector=connector,
            register_timeout=settings.register_connect_timeout,
            test_timeout=settings.test_connect_timeout,
        )
        await registry.load()
        if settings.seed_targets_file is not None:
            try:
                await registry.seed(load_seed_targets(settings.seed_targets_file))
            except (OSError, ValueError) as e:
                LOG.error("Error loading seed targets from %s: %s", settings.seed_targets_file, e)

        # 3) collection
        orchestrator = CollectionOrchestrator(
            registry, default_collectors(store), concurrency=settings.collect_concurrency
        )
        scheduler = CollectionScheduler(orchestrator, settings.collect_interval_seconds)
        if start_scheduler:
            scheduler.start()

        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.metrics_store = store
        app.state.registry = registry
        app.state.orchestrator = orchestrator
        app.state.scheduler = scheduler
        LOG.info("PostgreSQL monitoring API started with %d live connections", len(registry.live_targets()))

        yield  # --- application runs here ---

        # --- shutdown ---
        LOG.info("Shutting down: stopping collection and closing connections")
        await scheduler.stop()
        await registry.close_all()
        await engine.dispose()

    app = FastAPI(title="PostgreSQL fleet monitor", lifespan=lifespan)

    # CORS for dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_headers=["*"],
        allow_methods=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        LOG.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(TargetConnectionError)
    async def connection_error_handler(request: Request, exc: TargetConnectionError):
        return JSONResponse(status_code=400, content={"error": str(exc), "category": exc.category.value})

    @app.exception_handler(TargetNotFoundError)
    async def not_found_handler(request: Request, exc: TargetNotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    # Routers
    app.include_router(connections_router, prefix="/api")
    app.include_router(metrics_router, prefix="/api")
    return app


# for `uvicorn main:app`; logging and connections start with the lifespan
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
