"""Breadth-first site crawl over the browser pool."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

from app.config import get_settings
from app.core.browser_pool import BrowserPool
from app.core.errors import CrawlSupersededError, PoolExhaustedError
from app.core.urls import clamp_max_pages, normalize_url, validate_seed_url
from app.schemas.source import CrawlJob, CrawlPhase, CrawlProgress
from app.services.web_crawler import PageFetcher

settings = get_settings()
logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CrawlProgress], Awaitable[None]]


@dataclass
class CrawledPage:
    url: str
    title: str
    content: str
    depth: int
    order: int
    crawled_at: str


@dataclass
class CrawlOutcome:
    pages: list[CrawledPage]
    errors: list[dict[str, str]]
    discovered_links: list[str]
    attempted: int
    timed_out: bool
    elapsed: float

    @property
    def urls(self) -> list[str]:
        return [p.url for p in self.pages]


@dataclass
class _CrawlState:
    job: CrawlJob
    seed_host: str
    max_pages: int
    frontier: asyncio.Queue = field(default_factory=asyncio.Queue)
    seen: dict[str, int] = field(default_factory=dict)  # normalized url -> discovery order
    discovered: list[str] = field(default_factory=list)
    attempts: int = 0
    completed: int = 0
    fetch_seconds: float = 0.0
    slow_warned: bool = False
    pages: list[CrawledPage] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def avg_time_per_page(self) -> float:
        return self.fetch_seconds / self.completed if self.completed else 0.0

    @property
    def total(self) -> int:
        return min(self.max_pages, max(len(self.seen), 1))


class CrawlOrchestrator:
    """Drives one crawl: BFS frontier, bounded workers, page cap and wall-clock ceiling."""

    def __init__(
        self,
        pool: BrowserPool,
        fetcher: PageFetcher | None = None,
        timeout: float = settings.crawl_timeout_seconds,
        page_timeout: float = settings.crawl_page_timeout_seconds,
        concurrency: int = settings.crawl_concurrency,
        max_pages_limit: int = settings.crawl_max_pages_limit,
        slow_page_seconds: float = settings.crawl_slow_page_seconds,
        acquire_timeout: float | None = settings.browser_acquire_timeout_seconds,
    ):
        self.pool = pool
        self.fetcher = fetcher or PageFetcher()
        self.timeout = timeout
        self.page_timeout = page_timeout
        self.concurrency = max(1, concurrency)
        self.max_pages_limit = max_pages_limit
        self.slow_page_seconds = slow_page_seconds
        self.acquire_timeout = acquire_timeout

    async def crawl(
        self,
        job: CrawlJob,
        on_progress: ProgressCallback | None = None,
    ) -> CrawlOutcome:
        """Crawl ``job.url`` and return the usable pages.

        Raises:
            InvalidCrawlRequestError: Seed URL rejected.
            PoolExhaustedError: No browsing context could be obtained.
            CrawlSupersededError: The progress callback found a newer crawl.
        """
        seed = validate_seed_url(job.url)
        if job.crawl_subpages:
            max_pages = clamp_max_pages(job.max_pages, limit=self.max_pages_limit)
        else:
            max_pages = 1

        state = _CrawlState(job=job, seed_host=urlsplit(seed).hostname or "", max_pages=max_pages)
        state.seen[normalize_url(seed)] = 0
        state.frontier.put_nowait((seed, 0))

        logger.info(
            "Starting crawl of %s (source %s, max %d pages, subpages=%s)",
            seed,
            job.source_id,
            max_pages,
            job.crawl_subpages,
        )
        await self._report(on_progress, CrawlProgress(
            phase=CrawlPhase.DISCOVERING,
            total=max_pages,
            current_url=seed,
            queue_length=1,
        ))

        started = time.monotonic()
        timed_out = False
        n_workers = min(self.concurrency, self.pool.capacity, max_pages)
        workers = [
            asyncio.create_task(self._worker(state, on_progress))
            for _ in range(n_workers)
        ]
        drained = asyncio.create_task(state.frontier.join())
        try:
            async with asyncio.timeout(self.timeout):
                await asyncio.wait({drained, *workers}, return_when=asyncio.FIRST_COMPLETED)
            for task in workers:
                if task.done() and not task.cancelled() and task.exception():
                    raise task.exception()
        except TimeoutError:
            timed_out = True
            logger.warning(
                "Crawl of %s timed out after %.0fs (%d pages fetched)",
                seed,
                self.timeout,
                len(state.pages),
            )
        finally:
            # Cancelling a worker releases its lease through the pool context manager
            drained.cancel()
            for task in workers:
                task.cancel()
            await asyncio.gather(drained, *workers, return_exceptions=True)

        elapsed = time.monotonic() - started
        pages = sorted(state.pages, key=lambda p: p.order)
        logger.info(
            "Crawl of %s finished: %d pages, %d errors, %d links discovered in %.1fs",
            seed,
            len(pages),
            len(state.errors),
            len(state.discovered),
            elapsed,
        )
        return CrawlOutcome(
            pages=pages,
            errors=state.errors,
            discovered_links=list(state.discovered),
            attempted=state.attempts,
            timed_out=timed_out,
            elapsed=elapsed,
        )

    async def _worker(self, state: _CrawlState, on_progress: ProgressCallback | None) -> None:
        while True:
            url, depth = await state.frontier.get()
            try:
                # Page cap counts claimed attempts; the rest of the frontier is drained
                if state.attempts >= state.max_pages:
                    continue
                state.attempts += 1
                await self._visit(state, url, depth, on_progress)
            finally:
                state.frontier.task_done()

    async def _visit(
        self,
        state: _CrawlState,
        url: str,
        depth: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        job = state.job
        t0 = time.monotonic()
        async with self.pool.lease(timeout=self.acquire_timeout) as context:
            result = await self.fetcher.fetch(
                url,
                context,
                timeout=self.page_timeout,
                full_page_content=job.full_page_content,
                seed_host=state.seed_host,
            )
        state.fetch_seconds += time.monotonic() - t0
        state.completed += 1

        if result.ok:
            state.pages.append(CrawledPage(
                url=result.url,
                title=result.title,
                content=result.content,
                depth=depth,
                order=state.seen.get(normalize_url(url), len(state.seen)),
                crawled_at=datetime.now(timezone.utc).isoformat(),
            ))
            if job.crawl_subpages:
                for link in result.links:
                    key = normalize_url(link)
                    if key in state.seen:
                        continue
                    state.seen[key] = len(state.seen)
                    state.discovered.append(link)
                    state.frontier.put_nowait((link, depth + 1))
        else:
            state.errors.append({"url": url, "error": result.error or "No content"})
            logger.info("Page failed %s: %s", url, result.error)

        avg = state.avg_time_per_page
        if avg > self.slow_page_seconds and not state.slow_warned:
            state.slow_warned = True
            logger.warning(
                "Slow crawl for %s: %.1fs average per page",
                job.url,
                avg,
            )

        await self._report(on_progress, CrawlProgress(
            phase=CrawlPhase.CRAWLING,
            current=state.completed,
            total=state.total,
            current_url=url,
            discovered_links=list(state.discovered),
            queue_length=state.frontier.qsize(),
            avg_time_per_page=round(avg, 2),
        ))

    @staticmethod
    async def _report(on_progress: ProgressCallback | None, progress: CrawlProgress) -> None:
        if on_progress is None:
            return
        try:
            await on_progress(progress)
        except (CrawlSupersededError, PoolExhaustedError):
            raise
        except Exception:
            logger.warning("Progress callback failed", exc_info=True)


def page_metadata(page: CrawledPage, source_type: str = "website") -> dict[str, Any]:
    """Chunk metadata attached to every chunk of a crawled page."""
    return {
        "page_url": page.url,
        "page_title": page.title,
        "depth": page.depth,
        "crawl_timestamp": page.crawled_at,
        "source_type": source_type,
    }
