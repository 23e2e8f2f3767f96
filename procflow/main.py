"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from procflow.api.deps import Runtime
from procflow.api.executions import router as executions_router
from procflow.api.graphs import router as graphs_router
from procflow.api.reviews import router as reviews_router
from procflow.config import Settings, settings
from procflow.connectors.escalation import EscalationSink
from procflow.connectors.handlers import HandlerRegistry
from procflow.db.engine import Database
from procflow.errors import (
    ConflictError,
    DuplicateExecution,
    ExecutionNotFound,
    GraphInUse,
    GraphNotFound,
    GraphParseError,
    GraphValidationError,
    GraphVersionExists,
    InvalidCheckpoint,
    InvalidReviewState,
    MigrationError,
    ProcflowError,
)
from procflow.runtime.executor import GraphExecutor
from procflow.services.execution_store import ExecutionStore
from procflow.services.graph_service import GraphRegistry
from procflow.utils.logger import setup_logger
from procflow.utils.metrics import get_metrics_summary, to_prometheus_text

logger = logging.getLogger("procflow.main")

_STATUS_BY_ERROR: list[tuple[type[ProcflowError], int]] = [
    (ExecutionNotFound, 404),
    (GraphNotFound, 404),
    (ConflictError, 409),
    (DuplicateExecution, 409),
    (GraphVersionExists, 409),
    (GraphInUse, 409),
    (InvalidCheckpoint, 409),
    (InvalidReviewState, 409),
    (GraphParseError, 422),
    (GraphValidationError, 422),
    (MigrationError, 422),
]


def build_runtime(
    database: Database,
    handlers: HandlerRegistry | None = None,
    cfg: Settings = settings,
    escalation_sink: EscalationSink | None = None,
) -> Runtime:
    """Wire store, registry and executor around one database handle."""
    store = ExecutionStore(database, cfg.REDACTED_FIELDS)
    registry = GraphRegistry(database, store)
    executor = GraphExecutor(store, registry, handlers, escalation_sink=escalation_sink, cfg=cfg)
    return Runtime(database=database, store=store, registry=registry, executor=executor)


def create_app(
    cfg: Settings = settings,
    runtime: Runtime | None = None,
    handlers: HandlerRegistry | None = None,
) -> FastAPI:
    """Build the application.

    With *runtime* given the caller owns startup and shutdown (tests drive the
    dispatcher themselves); otherwise the lifespan creates tables, starts the
    workers and recovers in-flight executions.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logger(log_format=cfg.LOG_FORMAT, log_level=cfg.LOG_LEVEL)
        if runtime is not None:
            yield
            return
        database = Database.from_settings(cfg)
        await database.create_tables()
        rt = build_runtime(database, handlers, cfg)
        app.state.runtime = rt
        await rt.executor.dispatcher.start()
        recovered = await rt.executor.recover()
        logger.info("procflow started (%s, %d executions recovered)", cfg.DB_DIALECT, recovered)
        try:
            yield
        finally:
            await rt.executor.dispatcher.stop()
            await database.dispose()
            logger.info("procflow stopped")

    app = FastAPI(
        title="procflow",
        description="Procedural graph execution engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    @app.exception_handler(ProcflowError)
    async def _procflow_error(request: Request, exc: ProcflowError):
        status = 400
        for error_type, code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                status = code
                break
        body: dict = {"detail": str(exc), "error": type(exc).__name__}
        errors = getattr(exc, "errors", None)
        if errors:
            body["errors"] = [str(e) for e in errors]
        return JSONResponse(status_code=status, content=body)

    app.include_router(graphs_router, prefix="/api/graphs", tags=["graphs"])
    app.include_router(executions_router, prefix="/api/executions", tags=["executions"])
    app.include_router(reviews_router, prefix="/api/executions", tags=["reviews"])

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/metrics/summary", tags=["observability"])
    async def metrics_summary():
        return get_metrics_summary()

    @app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
    async def prometheus_metrics():
        """Prometheus-compatible text exposition of in-process metrics."""
        return PlainTextResponse(to_prometheus_text(), media_type="text/plain; version=0.0.4")

    return app


app = create_app()
