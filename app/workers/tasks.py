"""Arq task definitions for website crawling and embedding backfill."""

import logging
from uuid import UUID

from arq.worker import Retry

from app.config import get_settings
from app.core.browser_pool import BrowserPool
from app.core.errors import EmbeddingUnavailableError, PoolExhaustedError
from app.core.events import create_event_bus
from app.core.vector_store import vector_store
from app.database import engine
from app.schemas.source import CrawlJob
from app.services.crawl_orchestrator import CrawlOrchestrator
from app.services.ingestion import IngestionPipeline
from app.services.source_store import SourceStore
from app.workers.settings import redis_settings

settings = get_settings()
logger = logging.getLogger(__name__)


# ── Crawl tasks ──


async def crawl_website(ctx: dict, job_payload: dict) -> dict:
    """Crawl, chunk and embed a website source.

    Args:
        ctx: Arq context (holds the pipeline built at startup)
        job_payload: Serialized CrawlJob

    Returns:
        Dict with the final outcome
    """
    pipeline: IngestionPipeline = ctx["pipeline"]
    job = CrawlJob.model_validate(job_payload)
    job_id = ctx.get("job_id")
    job_try = ctx.get("job_try", 1)

    logger.info("Crawl job %s for source %s (try %d): %s", job_id, job.source_id, job_try, job.url)
    try:
        outcome = await pipeline.run_website_crawl(job, job_id=job_id)
        return {"source_id": str(job.source_id), "status": outcome}

    except PoolExhaustedError as e:
        if job_try < settings.worker_max_tries:
            defer = settings.worker_retry_defer_seconds * job_try
            logger.warning("Browser pool exhausted for source %s, retrying in %ds", job.source_id, defer)
            raise Retry(defer=defer) from e
        await pipeline.fail_crawl(job, f"Browser pool exhausted after {job_try} attempts: {e}", job_id=job_id)
        return {"source_id": str(job.source_id), "status": "error", "error": str(e)}

    except Exception as e:
        # Terminal status already written by the pipeline
        logger.exception("Error crawling source %s", job.source_id)
        return {"source_id": str(job.source_id), "status": "error", "error": str(e)[:2000]}


async def embed_agent(ctx: dict, agent_id: str) -> dict:
    """Backfill embeddings for every un-embedded chunk of an agent."""
    pipeline: IngestionPipeline = ctx["pipeline"]
    try:
        count = await pipeline.embed_and_store(agent_id=UUID(agent_id), job_id=ctx.get("job_id"))
    except EmbeddingUnavailableError as e:
        logger.warning("Embedding backfill for agent %s failed: %s", agent_id, e)
        return {"agent_id": agent_id, "embedded": 0, "error": str(e)}
    logger.info("Embedded %d chunks for agent %s", count, agent_id)
    return {"agent_id": agent_id, "embedded": count}


# ── Lifecycle ──


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    logger.info("Worker starting up...")
    pool = BrowserPool.from_settings(settings)
    await pool.start()
    bus = create_event_bus(settings)
    await bus.start()

    ctx["browser_pool"] = pool
    ctx["event_bus"] = bus
    ctx["pipeline"] = IngestionPipeline(
        store=SourceStore(),
        bus=bus,
        orchestrator=CrawlOrchestrator(pool),
    )
    try:
        await vector_store.ensure_collection()
    except Exception:
        logger.warning("Qdrant unavailable at startup, embeddings will be deferred", exc_info=True)


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Worker shutting down...")
    if "browser_pool" in ctx:
        await ctx["browser_pool"].shutdown()
    if "event_bus" in ctx:
        await ctx["event_bus"].close()
    await engine.dispose()


class WorkerSettings:
    """Arq worker settings."""

    functions = [crawl_website, embed_agent]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
    max_jobs = settings.worker_max_jobs
    job_timeout = settings.worker_job_timeout
    keep_result = settings.worker_keep_result
    max_tries = settings.worker_max_tries
