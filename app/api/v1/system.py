"""Operational endpoints: browser pool, queue status, orphan cleanup and crawler metrics."""

from fastapi import APIRouter, HTTPException, status

from app.deps import Pipeline, Pool, Queue, Runner, Store

router = APIRouter()

# Health thresholds for /crawler/metrics
HIGH_POOL_UTILIZATION = 80
HIGH_QUEUE_BACKLOG = 50
HIGH_AVG_CHUNKS = 1000


@router.get("/browser-pool/stats")
async def browser_pool_stats(pool: Pool) -> dict:
    """Browsers and contexts in use against the configured limits."""
    return pool.get_stats()


@router.get("/queue/status")
async def queue_status(queue: Queue, runner: Runner) -> dict:
    """Redis availability, queued jobs and crawls running in-process."""
    return {**await queue.status(), "direct_crawls": runner.active}


async def _live_source_ids(queue: Queue, runner: Runner) -> set:
    queued = await queue.active_source_ids()
    if queued is None:
        # Without the queue every queued source would look orphaned
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable, cannot tell live crawls from orphans",
        )
    return queued | runner.active_source_ids()


def _orphan_payload(orphans: list[dict]) -> list[dict]:
    return [
        {"id": str(o["id"]), "url": o["url"], "status": o["status"]}
        for o in orphans
    ]


@router.get("/queue/cleanup-orphaned")
async def preview_orphaned(queue: Queue, runner: Runner, pipeline: Pipeline) -> dict:
    """List website sources stuck mid-crawl with no live job, without changing them."""
    orphans = await pipeline.fail_orphaned(await _live_source_ids(queue, runner), dry_run=True)
    return {"count": len(orphans), "sources": _orphan_payload(orphans)}


@router.post("/queue/cleanup-orphaned")
async def cleanup_orphaned(queue: Queue, runner: Runner, pipeline: Pipeline) -> dict:
    """Mark website sources stuck mid-crawl with no live job as ``error``."""
    orphans = await pipeline.fail_orphaned(await _live_source_ids(queue, runner))
    return {
        "cleaned": len(orphans),
        "sources": _orphan_payload(orphans),
        "message": f"Marked {len(orphans)} orphaned source(s) as error",
    }


@router.get("/crawler/metrics")
async def crawler_metrics(pool: Pool, queue: Queue, runner: Runner, store: Store) -> dict:
    """Pool utilization, queue depth and recent crawl averages with health warnings."""
    pool_stats = pool.get_stats()
    capacity = pool_stats["max_browsers"] * pool_stats["max_contexts_per_browser"]
    utilization = round(pool_stats["contexts_in_use"] / capacity * 100) if capacity else 0
    queue_stats = await queue.status()
    crawls = await store.crawl_metrics()

    warnings = []
    if utilization > HIGH_POOL_UTILIZATION:
        warnings.append("High browser pool utilization")
    if not queue_stats["redis_available"]:
        warnings.append("Job queue unavailable, crawls run in-process")
    elif queue_stats["queued_jobs"] > HIGH_QUEUE_BACKLOG:
        warnings.append("Large queue backlog")
    if crawls["avg_chunks_per_crawl"] > HIGH_AVG_CHUNKS:
        warnings.append("High average chunks per crawl")

    return {
        "browser_pool": {**pool_stats, "utilization": utilization},
        "queue": {**queue_stats, "direct_crawls": runner.active},
        "crawls": crawls,
        "health": {"status": "warning" if warnings else "healthy", "warnings": warnings},
    }
