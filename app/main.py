"""GenMedic Pipeline Backend - FastAPI application."""

import logging
import random
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.db.supabase_client import create_supabase_store
from app.errors import PipelineError
from app.jobs.store import JobStore
from app.pipeline.artifacts import QualityScorer, TerminalArtifactProducer
from app.pipeline.dispatcher import InProcessDispatcher
from app.pipeline.executors import ExecutorRegistry
from app.pipeline.sequencer import StepSequencer
from app.pipeline.service import PipelineService, PollSettings
from app.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


def build_service(
    config: Settings = settings,
    store: Optional[JobStore] = None,
    executors: Optional[ExecutorRegistry] = None,
    scorer: Optional[QualityScorer] = None,
    artifacts: Optional[ArtifactStore] = None,
) -> PipelineService:
    """Wire store, sequencer, dispatcher and producers into a PipelineService.

    Any collaborator passed in is used as-is; the rest come from ``config``.
    """
    if store is None:
        # Tests pass an InMemoryJobStore; the service itself runs on Supabase.
        store, _ = create_supabase_store(config)

    artifacts = artifacts or ArtifactStore(config.artifact_dir or None)
    executors = executors or ExecutorRegistry.simulated(
        (config.step_delay_min_s, config.step_delay_max_s), random.Random()
    )
    producer = TerminalArtifactProducer(
        store, artifacts, scorer=scorer, default_formats=config.default_export_formats
    )
    sequencer = StepSequencer(
        store,
        executors,
        producer=producer,
        lease_ttl_seconds=config.lease_ttl_seconds,
        heartbeat_seconds=config.lease_heartbeat_seconds,
    )
    dispatcher = InProcessDispatcher(store, sequencer, max_concurrent=config.max_concurrent_jobs)
    return PipelineService(
        store,
        dispatcher,
        producer,
        artifacts,
        poll=PollSettings(
            interval_ms=config.poll_interval_ms,
            stop_on_terminal=config.poll_stop_on_terminal,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting GenMedic Pipeline Backend on port %d", settings.api_port)

    if app.state.pipeline is None:
        app.state.pipeline = build_service(settings)
    service: PipelineService = app.state.pipeline

    # Picks up jobs left queued or orphaned by a previous process
    await service.dispatcher.start()
    logger.info("Job dispatcher started")

    yield

    logger.info("Shutting down GenMedic Pipeline Backend")
    await service.dispatcher.stop()


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        detail = "Internal server error"
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": detail})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
    )
    return JSONResponse(
        status_code=400, content={"error": "validation_error", "detail": errors or "Invalid request"}
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s crashed", request.method, request.url.path)
    return JSONResponse(
        status_code=500, content={"error": "internal_error", "detail": "Internal server error"}
    )


def create_app(service: Optional[PipelineService] = None) -> FastAPI:
    """Build the FastAPI app. Without a service, one is built from settings at startup."""
    app = FastAPI(
        title="GenMedic Pipeline Service",
        description="Medical data pipeline job lifecycle: steps, status, exports and quality reports",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Mount routers
    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


app = create_app()
