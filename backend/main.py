"""FastAPI application entry point for the tree agent backend.

This module initializes the FastAPI application with all middleware,
routers, and the run worker.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import RunServices, router, set_run_services
from api.websocket import websocket_router
from config import configure_logging, settings
from events import EventLog, get_event_bus
from models.database import TreeStore
from models.ontology import OntologyStore
from tree_agent.llm import LLMClient, MockLLMClient
from tree_agent.run_controller import RunController
from worker import RunWorker

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Initializes the stores, event log, run controller and worker, re-enqueues
    runs a previous process left queued, and stops the worker on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
        database_path=settings.database_path,
    )

    tree_store = TreeStore(settings.database_path)
    await tree_store.init()
    ontology = OntologyStore(settings.database_path)
    await ontology.init()

    event_bus = get_event_bus()
    events = EventLog(tree_store, event_bus)
    llm = MockLLMClient() if settings.use_mock_llm else LLMClient()
    controller = RunController(
        tree_store=tree_store,
        ontology=ontology,
        events=events,
        llm=llm,
        bus=event_bus,
    )
    worker = RunWorker(controller)
    for job in await controller.recover_interrupted_runs():
        await worker.enqueue(job)
    worker.start()

    set_run_services(
        RunServices(tree_store=tree_store, ontology=ontology, events=events, worker=worker)
    )
    app.state.worker = worker

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await worker.stop()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Tree Agent",
    description="Backend API for recursive tree agent runs: plan, delegate, "
    "execute and aggregate work as a tree of nodes.",
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
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["runs"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Tree Agent API",
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
