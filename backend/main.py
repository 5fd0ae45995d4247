"""FastAPI application entry point for the agent pipeline backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_workflow_engine as set_routes_workflow_engine
from api.websocket import (
    set_workflow_engine as set_websocket_workflow_engine,
)
from api.websocket import (
    websocket_router,
)
from config import configure_logging, settings
from events import get_event_bus
from models.database import WorkflowStore
from workflow_engine import WorkflowEngine

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Opens the workflow store, fails workflows a previous process left
    unfinished, and wires the engine into the HTTP and WebSocket handlers.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        database_path=settings.database_path,
    )

    store = WorkflowStore(settings.database_path)
    await store.init()

    if settings.recover_orphaned_workflows:
        try:
            recovered = await store.mark_orphaned_workflows()
            logger.info("orphan_recovery_complete", recovered=recovered)
        except Exception as e:
            logger.warning("orphan_recovery_failed", error=str(e))

    event_bus = get_event_bus()
    engine = WorkflowEngine(store, event_bus)

    # Register the engine with routes
    set_routes_workflow_engine(engine)
    set_websocket_workflow_engine(engine)

    # Store on app.state for access
    app.state.workflow_engine = engine
    app.state.workflow_store = store

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    engine = app.state.workflow_engine
    await engine.shutdown()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Agent Pipeline Orchestrator",
    description="Backend API that runs a software task through a staged pipeline of "
    "PM, RD, UI, TEST and SEC coding agents.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["workflows"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points at the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Agent Pipeline Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
