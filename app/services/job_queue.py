"""Crawl job dispatch: arq queue first, supervised in-process task as fallback."""

import asyncio
import logging
from typing import Any, Awaitable, Callable
from uuid import UUID

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.constants import default_queue_name

from app.core.errors import PoolExhaustedError
from app.models import SourceStatus
from app.schemas.source import CrawlJob
from app.services.ingestion import IngestionPipeline
from app.services.source_store import SourceStore
from app.workers.settings import enqueue_redis_settings

logger = logging.getLogger(__name__)

PoolFactory = Callable[[RedisSettings], Awaitable[ArqRedis]]


class JobQueue:
    """Thin wrapper over an arq pool that reports Redis outages as ``None``."""

    def __init__(
        self,
        redis_settings: RedisSettings = enqueue_redis_settings,
        pool_factory: PoolFactory = create_pool,
    ):
        self.redis_settings = redis_settings
        self._pool_factory = pool_factory
        self._pool: ArqRedis | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        async with self._lock:
            if self._pool is None:
                self._pool = await self._pool_factory(self.redis_settings)
            return self._pool

    async def _reset(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            try:
                await pool.aclose()
            except Exception as e:
                logger.debug("Ignoring arq pool close error: %s", e)

    async def _enqueue(self, function: str, *args: Any) -> str | None:
        try:
            pool = await self._get_pool()
            job = await pool.enqueue_job(function, *args)
        except Exception:
            logger.warning("Failed to enqueue %s, Redis unavailable", function, exc_info=True)
            await self._reset()
            return None
        if job is None:
            return None
        logger.info("Enqueued %s as job %s", function, job.job_id)
        return job.job_id

    async def enqueue(self, job: CrawlJob) -> str | None:
        """Enqueue a crawl. Returns the arq job id, or None when Redis is unreachable."""
        return await self._enqueue("crawl_website", job.model_dump(mode="json"))

    async def enqueue_embedding(self, agent_id: UUID) -> str | None:
        return await self._enqueue("embed_agent", str(agent_id))

    async def status(self) -> dict[str, Any]:
        """Redis availability and number of queued jobs."""
        try:
            pool = await self._get_pool()
            queued = await pool.zcard(default_queue_name)
        except Exception as e:
            logger.warning("Queue status unavailable: %s", e)
            await self._reset()
            return {"redis_available": False, "queued_jobs": None, "error": str(e)}
        return {"redis_available": True, "queued_jobs": int(queued)}

    async def active_source_ids(self) -> set[UUID] | None:
        """Sources with a crawl job still in the arq queue, running ones included.

        arq keeps a job in the queue sorted set until it finishes, so this covers
        queued, deferred and in-progress jobs. None when Redis is unreachable.
        """
        try:
            pool = await self._get_pool()
            jobs = await pool.queued_jobs()
        except Exception as e:
            logger.warning("Could not list queued jobs: %s", e)
            await self._reset()
            return None
        ids: set[UUID] = set()
        for job in jobs:
            if job.function != "crawl_website" or not job.args:
                continue
            try:
                ids.add(UUID(str(job.args[0]["source_id"])))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed crawl job %s", job.job_id)
        return ids

    async def close(self) -> None:
        await self._reset()


class DirectRunner:
    """Runs crawls as supervised asyncio tasks inside the API process."""

    def __init__(self, pipeline: IngestionPipeline):
        self.pipeline = pipeline
        self._tasks: dict[asyncio.Task, UUID] = {}

    @property
    def active(self) -> int:
        return len(self._tasks)

    def active_source_ids(self) -> set[UUID]:
        return set(self._tasks.values())

    def spawn(self, job: CrawlJob) -> asyncio.Task:
        task = asyncio.create_task(self._run(job), name=f"crawl-{job.source_id}")
        self._tasks[task] = job.source_id
        task.add_done_callback(self._on_done)
        return task

    async def _run(self, job: CrawlJob) -> str:
        try:
            return await self.pipeline.run_website_crawl(job)
        except PoolExhaustedError as e:
            await self.pipeline.fail_crawl(job, f"Browser pool exhausted, retry later: {e}")
            raise
        except BaseException:
            # No-op when the pipeline already wrote a terminal status
            await self.pipeline.fail_crawl(job, "Crawl stopped unexpectedly")
            raise

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            logger.warning("Direct crawl %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Direct crawl %s failed: %s", task.get_name(), exc, exc_info=exc)
        else:
            logger.info("Direct crawl %s finished: %s", task.get_name(), task.result())

    async def shutdown(self) -> None:
        """Cancel and await every outstanding crawl."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelling %d direct crawl(s)", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)


async def start_website_crawl(
    job: CrawlJob,
    queue: JobQueue,
    runner: DirectRunner,
    store: SourceStore,
) -> str | None:
    """Dispatch a crawl: queued with its job id, or processing in-process (returns None)."""
    job_id = await queue.enqueue(job)
    if job_id is not None:
        await store.update_source(
            job.source_id,
            generation=job.generation,
            status=SourceStatus.QUEUED.value,
            metadata={"job_id": job_id},
        )
        return job_id

    logger.info("Running crawl for source %s directly", job.source_id)
    await store.update_source(
        job.source_id,
        generation=job.generation,
        status=SourceStatus.PROCESSING.value,
        metadata={"job_id": None},
    )
    runner.spawn(job)
    return None
