"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.v1.router import api_router
from app.config import get_settings
from app.core.browser_pool import BrowserPool
from app.core.errors import (
    AgentNotFoundError,
    EmbeddingUnavailableError,
    InvalidCrawlRequestError,
    PoolExhaustedError,
    SourceNotFoundError,
)
from app.core.events import create_event_bus
from app.core.vector_store import vector_store
from app.database import engine
from app.services.crawl_orchestrator import CrawlOrchestrator
from app.services.ingestion import IngestionPipeline
from app.services.job_queue import DirectRunner, JobQueue
from app.services.retrieval import RetrievalService
from app.services.source_store import SourceStore

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    browser_pool = BrowserPool.from_settings(settings)
    await browser_pool.start()
    event_bus = create_event_bus(settings)
    await event_bus.start()
    try:
        await vector_store.ensure_collection()
    except Exception:
        logger.warning("Qdrant unavailable at startup, embeddings will be deferred", exc_info=True)

    store = SourceStore()
    pipeline = IngestionPipeline(
        store=store,
        bus=event_bus,
        orchestrator=CrawlOrchestrator(browser_pool),
    )
    app.state.store = store
    app.state.browser_pool = browser_pool
    app.state.event_bus = event_bus
    app.state.pipeline = pipeline
    app.state.job_queue = JobQueue()
    app.state.runner = DirectRunner(pipeline)
    app.state.retrieval = RetrievalService()

    yield

    # Shutdown
    await app.state.runner.shutdown()
    await app.state.job_queue.close()
    await browser_pool.shutdown()
    await event_bus.close()
    await engine.dispose()


app = FastAPI(
    title="Knowledge Base Ingestion",
    description="Website-to-knowledge-base ingestion and retrieval API",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidCrawlRequestError)
async def invalid_crawl_request_handler(request: Request, exc: InvalidCrawlRequestError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PoolExhaustedError)
async def pool_exhausted_handler(request: Request, exc: PoolExhaustedError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "browser_pool_exhausted", "detail": str(exc)},
        headers={"Retry-After": str(settings.worker_retry_defer_seconds)},
    )


@app.exception_handler(EmbeddingUnavailableError)
async def embedding_unavailable_handler(request: Request, exc: EmbeddingUnavailableError) -> JSONResponse:
    logger.warning("Embedding backend unavailable: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"error": "embedding_unavailable", "detail": str(exc)},
    )


@app.exception_handler(AgentNotFoundError)
@app.exception_handler(SourceNotFoundError)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if settings.debug:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__},
        )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
