"""Tests for the breadth-first crawl orchestrator."""

from uuid import uuid4

import pytest

from app.core.browser_pool import BrowserPool
from app.core.errors import CrawlSupersededError, InvalidCrawlRequestError, PoolExhaustedError
from app.schemas.source import CrawlJob, CrawlPhase
from app.services.crawl_orchestrator import CrawledPage, CrawlOrchestrator, page_metadata

SEED = "https://example.com/"


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _job(url=SEED, crawl_subpages=True, max_pages=10, **kwargs) -> CrawlJob:
    return CrawlJob(
        source_id=uuid4(),
        agent_id=uuid4(),
        project_id=uuid4(),
        url=url,
        crawl_subpages=crawl_subpages,
        max_pages=max_pages,
        **kwargs,
    )


def _recorder():
    reports = []

    async def on_progress(progress):
        reports.append(progress)

    return reports, on_progress


@pytest.fixture
def site(make_page):
    return {
        SEED: make_page(SEED, links=[
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/",  # back to the seed
        ]),
        "https://example.com/a": make_page("https://example.com/a", links=[
            "https://example.com/b",
            "https://example.com/a/deep",
        ]),
        "https://example.com/b": make_page("https://example.com/b", links=["https://example.com/a"]),
        "https://example.com/a/deep": make_page("https://example.com/a/deep"),
    }


# ─── Tests ───────────────────────────────────────────────────────────────────

class TestCrawl:
    @pytest.mark.asyncio
    async def test_visits_every_reachable_page_once(self, pool, site, make_fetcher):
        fetcher = make_fetcher(site)
        orchestrator = CrawlOrchestrator(pool, fetcher=fetcher, timeout=5, concurrency=2)

        outcome = await orchestrator.crawl(_job())

        assert sorted(fetcher.fetched) == sorted(site)
        assert outcome.urls == [
            SEED,
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/a/deep",
        ]
        assert outcome.attempted == 4
        assert outcome.discovered_links == [
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/a/deep",
        ]
        assert outcome.errors == []
        assert not outcome.timed_out

    @pytest.mark.asyncio
    async def test_depth_is_hop_count_from_seed(self, pool, site, make_fetcher):
        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=5, concurrency=1)

        outcome = await orchestrator.crawl(_job())

        depths = {p.url: p.depth for p in outcome.pages}
        assert depths == {
            SEED: 0,
            "https://example.com/a": 1,
            "https://example.com/b": 1,
            "https://example.com/a/deep": 2,
        }

    @pytest.mark.asyncio
    async def test_without_subpages_only_seed_is_fetched(self, pool, site, make_fetcher):
        fetcher = make_fetcher(site)
        orchestrator = CrawlOrchestrator(pool, fetcher=fetcher, timeout=5)

        outcome = await orchestrator.crawl(_job(crawl_subpages=False, max_pages=50))

        assert fetcher.fetched == [SEED]
        assert outcome.attempted == 1
        assert outcome.discovered_links == []

    @pytest.mark.asyncio
    async def test_page_cap_counts_attempts(self, pool, make_page, make_fetcher):
        links = [f"https://example.com/p{i}" for i in range(20)]
        site = {SEED: make_page(SEED, links=links)}
        # Every subpage fails; failures still count against the cap
        fetcher = make_fetcher(site)
        orchestrator = CrawlOrchestrator(pool, fetcher=fetcher, timeout=5, concurrency=3)

        outcome = await orchestrator.crawl(_job(max_pages=5))

        assert outcome.attempted == 5
        assert len(fetcher.fetched) == 5
        assert outcome.urls == [SEED]
        assert len(outcome.errors) == 4
        assert all(e["error"] == "HTTP 404" for e in outcome.errors)

    @pytest.mark.asyncio
    async def test_max_pages_clamped_to_limit(self, pool, make_page, make_fetcher):
        links = [f"https://example.com/p{i}" for i in range(10)]
        site = {SEED: make_page(SEED, links=links)}
        site.update({link: make_page(link) for link in links})
        orchestrator = CrawlOrchestrator(
            pool, fetcher=make_fetcher(site), timeout=5, max_pages_limit=3,
        )

        outcome = await orchestrator.crawl(_job(max_pages=500))

        assert outcome.attempted == 3

    @pytest.mark.asyncio
    async def test_failed_pages_do_not_expand_frontier(self, pool, make_fetcher):
        fetcher = make_fetcher({})
        orchestrator = CrawlOrchestrator(pool, fetcher=fetcher, timeout=5)

        outcome = await orchestrator.crawl(_job())

        assert outcome.pages == []
        assert outcome.errors == [{"url": SEED, "error": "HTTP 404"}]
        assert outcome.attempted == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, pool, make_page, make_fetcher):
        links = [f"https://example.com/p{i}" for i in range(8)]
        site = {SEED: make_page(SEED, links=links)}
        site.update({link: make_page(link) for link in links})
        fetcher = make_fetcher(site, default_delay=0.01)
        orchestrator = CrawlOrchestrator(pool, fetcher=fetcher, timeout=5, concurrency=2)

        await orchestrator.crawl(_job())

        assert fetcher.max_in_flight <= 2
        assert pool.get_stats()["contexts_in_use"] == 0

    @pytest.mark.asyncio
    async def test_invalid_seed_rejected(self, pool, make_fetcher):
        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher({}))
        with pytest.raises(InvalidCrawlRequestError):
            await orchestrator.crawl(_job(url="ftp://example.com"))


class TestProgress:
    @pytest.mark.asyncio
    async def test_one_report_per_attempt(self, pool, site, make_fetcher):
        reports, on_progress = _recorder()
        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=5, concurrency=1)

        await orchestrator.crawl(_job(), on_progress)

        assert reports[0].phase == CrawlPhase.DISCOVERING
        crawling = reports[1:]
        assert all(r.phase == CrawlPhase.CRAWLING for r in crawling)
        assert [r.current for r in crawling] == [1, 2, 3, 4]
        assert all(r.current <= r.total for r in crawling)
        assert crawling[-1].percent == 100

    @pytest.mark.asyncio
    async def test_reports_carry_cumulative_discovered_links(self, pool, make_page, make_fetcher):
        site = {SEED: make_page(SEED, links=["https://example.com/a", "https://example.com/b"])}
        reports, on_progress = _recorder()
        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=5)

        outcome = await orchestrator.crawl(_job(max_pages=1), on_progress)

        assert reports[0].discovered_links == []
        assert reports[-1].discovered_links == ["https://example.com/a", "https://example.com/b"]
        assert outcome.discovered_links == ["https://example.com/a", "https://example.com/b"]
        assert outcome.attempted == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_crawl(self, pool, site, make_fetcher):
        async def broken(progress):
            raise RuntimeError("redis down")

        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=5)
        outcome = await orchestrator.crawl(_job(), broken)

        assert len(outcome.pages) == 4

    @pytest.mark.asyncio
    async def test_superseded_callback_aborts_crawl(self, pool, site, make_fetcher):
        async def superseded(progress):
            if progress.phase == CrawlPhase.CRAWLING:
                raise CrawlSupersededError("newer crawl")

        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=5)
        with pytest.raises(CrawlSupersededError):
            await orchestrator.crawl(_job(), superseded)
        assert pool.get_stats()["contexts_in_use"] == 0


class TestFailureModes:
    @pytest.mark.asyncio
    async def test_timeout_returns_partial_outcome(self, pool, site, make_fetcher):
        fetcher = make_fetcher(site, default_delay=1.0)
        orchestrator = CrawlOrchestrator(pool, fetcher=fetcher, timeout=0.1)

        outcome = await orchestrator.crawl(_job())

        assert outcome.timed_out
        assert outcome.pages == []
        assert outcome.attempted == 1
        assert pool.get_stats()["contexts_in_use"] == 0

    @pytest.mark.asyncio
    async def test_timeout_during_browser_launch_frees_the_pool(self, make_launcher, site, make_fetcher):
        launcher = make_launcher(delay=0.5)
        pool = BrowserPool(max_browsers=1, max_contexts_per_browser=1, launcher=launcher)
        await pool.start()
        try:
            orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=0.1)

            outcome = await orchestrator.crawl(_job())

            assert outcome.timed_out
            assert pool._launching == 0
            assert pool.get_stats()["contexts_in_use"] == 0

            launcher.delay = 0
            lease = await pool.acquire_context(timeout=0.5)
            await lease.release()
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_during_context_creation_frees_the_pool(self, make_launcher, site, make_fetcher):
        launcher = make_launcher(context_delay=0.5)
        pool = BrowserPool(max_browsers=1, max_contexts_per_browser=1, launcher=launcher)
        await pool.start()
        try:
            orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=0.1)

            outcome = await orchestrator.crawl(_job())

            assert outcome.timed_out
            assert pool.get_stats()["contexts_in_use"] == 0

            launcher.browsers[0].context_delay = 0
            lease = await pool.acquire_context(timeout=0.5)
            await lease.release()
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_fresh_lease_after_fetch_timeout(self, pool, site, make_fetcher):
        orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site, default_delay=1.0), timeout=0.1)

        assert (await orchestrator.crawl(_job())).timed_out

        assert pool.get_stats()["contexts_in_use"] == 0
        lease = await pool.acquire_context(wait=False)
        await lease.release()

    @pytest.mark.asyncio
    async def test_pool_exhaustion_propagates(self, make_launcher, site, make_fetcher):
        pool = BrowserPool(launcher=make_launcher(fail=True))
        await pool.start()
        try:
            orchestrator = CrawlOrchestrator(pool, fetcher=make_fetcher(site), timeout=5)
            with pytest.raises(PoolExhaustedError):
                await orchestrator.crawl(_job())
        finally:
            await pool.shutdown()


def test_page_metadata():
    page = CrawledPage(
        url="https://example.com/a",
        title="A",
        content="text",
        depth=1,
        order=1,
        crawled_at="2026-01-01T00:00:00+00:00",
    )
    assert page_metadata(page) == {
        "page_url": "https://example.com/a",
        "page_title": "A",
        "depth": 1,
        "crawl_timestamp": "2026-01-01T00:00:00+00:00",
        "source_type": "website",
    }
