"""Tests for crawl dispatch: arq queue, direct fallback and worker tasks."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from arq.worker import Retry

from app.config import get_settings
from app.core.errors import EmbeddingUnavailableError, PoolExhaustedError
from app.models import SourceStatus
from app.schemas.source import CrawlJob
from app.services.job_queue import DirectRunner, JobQueue, start_website_crawl
from app.workers.tasks import crawl_website, embed_agent

settings = get_settings()


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _job(source_id=None, generation=0) -> CrawlJob:
    return CrawlJob(
        source_id=source_id or uuid4(),
        agent_id=uuid4(),
        project_id=uuid4(),
        url="https://example.com/",
        generation=generation,
    )


def _arq_pool(job_id="job-123"):
    pool = MagicMock()
    arq_job = MagicMock()
    arq_job.job_id = job_id
    pool.enqueue_job = AsyncMock(return_value=arq_job)
    pool.zcard = AsyncMock(return_value=2)
    pool.aclose = AsyncMock()
    return pool


async def _unreachable(redis_settings):
    raise ConnectionError("Error connecting to localhost:6379")


# ─── JobQueue ────────────────────────────────────────────────────────────────

class TestJobQueue:
    @pytest.mark.asyncio
    async def test_enqueue_returns_job_id(self):
        pool = _arq_pool()
        queue = JobQueue(pool_factory=AsyncMock(return_value=pool))
        job = _job()

        job_id = await queue.enqueue(job)

        assert job_id == "job-123"
        function, payload = pool.enqueue_job.await_args.args
        assert function == "crawl_website"
        assert payload["source_id"] == str(job.source_id)
        assert CrawlJob.model_validate(payload) == job

    @pytest.mark.asyncio
    async def test_enqueue_returns_none_when_redis_down(self):
        queue = JobQueue(pool_factory=_unreachable)
        assert await queue.enqueue(_job()) is None

    @pytest.mark.asyncio
    async def test_failed_enqueue_reconnects_next_time(self):
        pool = _arq_pool()
        pool.enqueue_job = AsyncMock(side_effect=[ConnectionError("reset"), MagicMock(job_id="job-2")])
        factory = AsyncMock(return_value=pool)
        queue = JobQueue(pool_factory=factory)

        assert await queue.enqueue(_job()) is None
        assert await queue.enqueue(_job()) == "job-2"
        assert factory.await_count == 2
        pool.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_enqueue_embedding(self):
        pool = _arq_pool("embed-1")
        queue = JobQueue(pool_factory=AsyncMock(return_value=pool))
        agent_id = uuid4()

        assert await queue.enqueue_embedding(agent_id) == "embed-1"
        pool.enqueue_job.assert_awaited_once_with("embed_agent", str(agent_id))

    @pytest.mark.asyncio
    async def test_status(self):
        queue = JobQueue(pool_factory=AsyncMock(return_value=_arq_pool()))
        assert await queue.status() == {"redis_available": True, "queued_jobs": 2}

        down = JobQueue(pool_factory=_unreachable)
        status = await down.status()
        assert status["redis_available"] is False
        assert status["queued_jobs"] is None

    @pytest.mark.asyncio
    async def test_active_source_ids_reads_crawl_jobs(self):
        crawling, waiting = uuid4(), uuid4()
        pool = _arq_pool()
        pool.queued_jobs = AsyncMock(return_value=[
            SimpleNamespace(job_id="a", function="crawl_website", args=({"source_id": str(crawling)},)),
            SimpleNamespace(job_id="b", function="crawl_website", args=({"source_id": str(waiting)},)),
            SimpleNamespace(job_id="c", function="embed_agent", args=(str(uuid4()),)),
            SimpleNamespace(job_id="d", function="crawl_website", args=({},)),
        ])
        queue = JobQueue(pool_factory=AsyncMock(return_value=pool))

        assert await queue.active_source_ids() == {crawling, waiting}

    @pytest.mark.asyncio
    async def test_active_source_ids_none_when_redis_down(self):
        queue = JobQueue(pool_factory=_unreachable)
        assert await queue.active_source_ids() is None


# ─── Dispatch ────────────────────────────────────────────────────────────────

class TestStartWebsiteCrawl:
    @pytest.mark.asyncio
    async def test_queued_when_redis_available(self, store):
        agent = store.add_agent()
        source = await store.create_source(agent_id=agent.id, project_id=agent.project_id, type="website", name="x")
        queue = MagicMock()
        queue.enqueue = AsyncMock(return_value="job-9")
        runner = MagicMock()

        job_id = await start_website_crawl(_job(source.id), queue, runner, store)

        assert job_id == "job-9"
        assert source.status == SourceStatus.QUEUED.value
        assert source.source_metadata["job_id"] == "job-9"
        runner.spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_direct_fallback_when_redis_down(self, store):
        agent = store.add_agent()
        source = await store.create_source(agent_id=agent.id, project_id=agent.project_id, type="website", name="x")
        queue = MagicMock()
        queue.enqueue = AsyncMock(return_value=None)
        runner = MagicMock()
        job = _job(source.id)

        job_id = await start_website_crawl(job, queue, runner, store)

        assert job_id is None
        assert source.status == SourceStatus.PROCESSING.value
        runner.spawn.assert_called_once_with(job)


class TestDirectRunner:
    @pytest.mark.asyncio
    async def test_runs_pipeline(self):
        pipeline = MagicMock()
        pipeline.run_website_crawl = AsyncMock(return_value="ready")
        pipeline.fail_crawl = AsyncMock()
        runner = DirectRunner(pipeline)

        task = runner.spawn(_job())
        assert await task == "ready"
        await asyncio.sleep(0)

        assert runner.active == 0
        pipeline.fail_crawl.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pool_exhaustion_fails_source(self):
        pipeline = MagicMock()
        pipeline.run_website_crawl = AsyncMock(side_effect=PoolExhaustedError("all contexts busy"))
        pipeline.fail_crawl = AsyncMock(return_value=True)
        runner = DirectRunner(pipeline)
        job = _job()

        task = runner.spawn(job)
        with pytest.raises(PoolExhaustedError):
            await task

        reason = pipeline.fail_crawl.await_args.args[1]
        assert "Browser pool exhausted" in reason

    @pytest.mark.asyncio
    async def test_shutdown_cancels_and_fails_running_crawls(self):
        started = asyncio.Event()

        async def slow_crawl(job):
            started.set()
            await asyncio.sleep(10)

        pipeline = MagicMock()
        pipeline.run_website_crawl = slow_crawl
        pipeline.fail_crawl = AsyncMock(return_value=True)
        runner = DirectRunner(pipeline)
        job = _job()

        runner.spawn(job)
        await started.wait()
        await runner.shutdown()

        assert runner.active == 0
        pipeline.fail_crawl.assert_awaited_once_with(job, "Crawl stopped unexpectedly")

    @pytest.mark.asyncio
    async def test_tracks_running_source_ids(self):
        release = asyncio.Event()

        async def crawl(job):
            await release.wait()
            return "ready"

        pipeline = MagicMock()
        pipeline.run_website_crawl = crawl
        pipeline.fail_crawl = AsyncMock()
        runner = DirectRunner(pipeline)
        job = _job()

        task = runner.spawn(job)
        assert runner.active_source_ids() == {job.source_id}

        release.set()
        await task
        await asyncio.sleep(0)
        assert runner.active_source_ids() == set()


# ─── Worker tasks ────────────────────────────────────────────────────────────

class TestWorkerTasks:
    @pytest.mark.asyncio
    async def test_crawl_website_returns_outcome(self):
        pipeline = MagicMock()
        pipeline.run_website_crawl = AsyncMock(return_value="ready")
        job = _job()

        result = await crawl_website({"pipeline": pipeline, "job_id": "j1", "job_try": 1}, job.model_dump(mode="json"))

        assert result == {"source_id": str(job.source_id), "status": "ready"}
        pipeline.run_website_crawl.assert_awaited_once_with(job, job_id="j1")

    @pytest.mark.asyncio
    async def test_pool_exhaustion_retries_with_backoff(self):
        pipeline = MagicMock()
        pipeline.run_website_crawl = AsyncMock(side_effect=PoolExhaustedError("busy"))
        pipeline.fail_crawl = AsyncMock()

        with pytest.raises(Retry):
            await crawl_website({"pipeline": pipeline, "job_try": 1}, _job().model_dump(mode="json"))
        pipeline.fail_crawl.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pool_exhaustion_on_last_try_fails_source(self):
        pipeline = MagicMock()
        pipeline.run_website_crawl = AsyncMock(side_effect=PoolExhaustedError("busy"))
        pipeline.fail_crawl = AsyncMock()
        ctx = {"pipeline": pipeline, "job_try": settings.worker_max_tries}

        result = await crawl_website(ctx, _job().model_dump(mode="json"))

        assert result["status"] == "error"
        pipeline.fail_crawl.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_crawl_error_is_reported_not_raised(self):
        pipeline = MagicMock()
        pipeline.run_website_crawl = AsyncMock(side_effect=RuntimeError("boom"))

        result = await crawl_website({"pipeline": pipeline}, _job().model_dump(mode="json"))

        assert result["status"] == "error"
        assert result["error"] == "boom"

    @pytest.mark.asyncio
    async def test_embed_agent(self):
        pipeline = MagicMock()
        pipeline.embed_and_store = AsyncMock(return_value=7)
        agent_id = str(uuid4())

        assert await embed_agent({"pipeline": pipeline}, agent_id) == {"agent_id": agent_id, "embedded": 7}

        pipeline.embed_and_store = AsyncMock(side_effect=EmbeddingUnavailableError("down"))
        result = await embed_agent({"pipeline": pipeline}, agent_id)
        assert result["embedded"] == 0
        assert result["error"] == "down"
