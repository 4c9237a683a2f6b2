"""Shared fakes: browser, store, embedder and vector index."""

import asyncio
import math
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from app.core.browser_pool import BrowserPool
from app.core.errors import EmbeddingUnavailableError
from app.core.events import InMemoryEventBus
from app.models import Agent, Source, SourceStatus, SourceType
from app.models.source import is_forward_transition
from app.services.source_store import ChunkRecord
from app.services.web_crawler import PageResult


# ─── Browser ─────────────────────────────────────────────────────────────────

class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.url = "about:blank"
        self.closed = False

    async def evaluate(self, script):
        return None

    async def route(self, pattern, handler):
        return None

    async def close(self):
        self.closed = True
        if self in self.context.pages:
            self.context.pages.remove(self)


class FakeContext:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.pages: list[FakePage] = []
        self.closed = False
        self.cookie_clears = 0

    async def new_page(self):
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def clear_cookies(self):
        self.cookie_clears += 1

    async def clear_permissions(self):
        return None

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, context_delay: float = 0.0):
        self.contexts: list[FakeContext] = []
        self.closed = False
        self.context_delay = context_delay

    def is_connected(self) -> bool:
        return not self.closed

    async def new_context(self, **kwargs):
        if self.context_delay:
            await asyncio.sleep(self.context_delay)
        context = FakeContext(self)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeLauncher:
    """Callable launcher that records the browsers it created."""

    def __init__(self, fail: bool = False, delay: float = 0.0, context_delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.context_delay = context_delay
        self.browsers: list[FakeBrowser] = []

    async def __call__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("chromium not installed")
        browser = FakeBrowser(context_delay=self.context_delay)
        self.browsers.append(browser)
        return browser


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest_asyncio.fixture
async def pool(launcher):
    browser_pool = BrowserPool(
        max_browsers=2,
        max_contexts_per_browser=2,
        max_uses_per_context=3,
        idle_timeout=300,
        launcher=launcher,
    )
    await browser_pool.start()
    yield browser_pool
    await browser_pool.shutdown()


class FakeFetcher:
    """Serves pages from a dict ``url -> PageResult`` (or ``(delay, PageResult)``)."""

    def __init__(self, site: dict, default_delay: float = 0.0):
        self.site = site
        self.default_delay = default_delay
        self.fetched: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, url, context, timeout=30.0, full_page_content=False, seed_host=None):
        self.fetched.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            entry = self.site.get(url)
            delay = self.default_delay
            if isinstance(entry, tuple):
                delay, entry = entry
            if delay:
                await asyncio.sleep(delay)
            if entry is None:
                return PageResult(url=url, error="HTTP 404")
            return entry
        finally:
            self.in_flight -= 1


def _page(url: str, content: str = "", links: list[str] | None = None, title: str = "") -> PageResult:
    return PageResult(
        url=url,
        title=title or url,
        content=content or f"Content of {url}. " * 10,
        links=links or [],
    )


# ─── Store ───────────────────────────────────────────────────────────────────

class FakeStore:
    """In-memory stand-in for SourceStore with the same generation/status guards."""

    def __init__(self):
        self.agents: dict[UUID, Agent] = {}
        self.sources: dict[UUID, Source] = {}
        self.chunks: dict[UUID, ChunkRecord] = {}
        self.status_history: dict[UUID, list[str]] = {}
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add_agent(self, project_id: UUID | None = None) -> Agent:
        agent = Agent(id=uuid4(), project_id=project_id or uuid4(), name="Agent", created_at=self._tick())
        self.agents[agent.id] = agent
        return agent

    async def get_source(self, source_id):
        return self.sources.get(source_id)

    async def get_agent(self, agent_id):
        return self.agents.get(agent_id)

    async def list_sources(self, agent_id, source_type=None):
        return [
            s for s in self.sources.values()
            if s.agent_id == agent_id
            and s.status != SourceStatus.REMOVED.value
            and (source_type is None or s.type == source_type)
        ]

    async def create_source(self, **values):
        now = self._tick()
        defaults = dict(
            id=uuid4(),
            website_url=None,
            status=SourceStatus.PENDING.value,
            error_message=None,
            size_kb=0,
            chunk_count=0,
            is_trained=False,
            crawl_generation=0,
            source_metadata={},
            created_at=now,
            updated_at=now,
        )
        defaults.update(values)
        source = Source(**defaults)
        self.sources[source.id] = source
        self.status_history[source.id] = [source.status]
        return source

    async def update_source(self, source_id, generation=None, metadata=None, **values):
        source = self.sources.get(source_id)
        if source is None:
            return False
        if generation is not None and source.crawl_generation != generation:
            return False
        if "status" in values:
            values["status"] = SourceStatus(values["status"]).value
            if not is_forward_transition(source.status, values["status"]):
                return False
        for key, value in values.items():
            setattr(source, key, value)
        if metadata:
            source.source_metadata = {**(source.source_metadata or {}), **metadata}
        if "status" in values:
            self.status_history[source_id].append(values["status"])
        source.updated_at = self._tick()
        return True

    async def merge_metadata(self, source_id, values, generation=None):
        return await self.update_source(source_id, generation=generation, metadata=values)

    async def begin_recrawl(self, source_id, settings_metadata):
        source = self.sources.get(source_id)
        if source is None:
            return None
        self._drop_chunks(source_id)
        source.status = SourceStatus.PENDING.value
        source.error_message = None
        source.chunk_count = 0
        source.is_trained = False
        source.crawl_generation += 1
        source.source_metadata = dict(settings_metadata)
        self.status_history[source_id].append(source.status)
        return source.crawl_generation

    def _drop_chunks(self, source_id):
        for cid in [c.id for c in self.chunks.values() if c.source_id == source_id]:
            del self.chunks[cid]

    async def replace_chunks(self, source, chunks, generation=None):
        current = self.sources.get(source.id)
        if generation is not None and (current is None or current.crawl_generation != generation):
            return None
        self._drop_chunks(source.id)
        ids = []
        for chunk in chunks:
            record = ChunkRecord(
                id=uuid4(),
                source_id=source.id,
                agent_id=source.agent_id,
                source_name=source.name,
                source_type=source.type,
                content=chunk.content,
                position=chunk.chunk_index,
                metadata=dict(chunk.metadata),
                created_at=self._tick(),
            )
            self.chunks[record.id] = record
            ids.append(record.id)
        return ids

    def chunks_of(self, source_id) -> list[ChunkRecord]:
        return sorted(
            (c for c in self.chunks.values() if c.source_id == source_id),
            key=lambda c: c.position,
        )

    def _live(self, record: ChunkRecord) -> bool:
        source = self.sources.get(record.source_id)
        return source is not None and source.status != SourceStatus.REMOVED.value

    async def list_unembedded_chunks(self, source_id=None, agent_id=None):
        return [
            c for c in sorted(self.chunks.values(), key=lambda c: (c.created_at, c.position))
            if c.embedding is None and self._live(c)
            and (source_id is None or c.source_id == source_id)
            and (agent_id is None or c.agent_id == agent_id)
        ]

    async def list_embedded_chunks(self, source_id):
        return [c for c in self.chunks_of(source_id) if c.embedding is not None]

    async def set_embeddings(self, vectors):
        for chunk_id, vector in vectors.items():
            self.chunks[chunk_id].embedding = vector

    async def mark_trained(self, source_ids):
        for sid in source_ids:
            if all(c.embedding is not None for c in self.chunks_of(sid)):
                self.sources[sid].is_trained = True

    async def embedding_stats(self, agent_id):
        live = [c for c in self.chunks.values() if c.agent_id == agent_id and self._live(c)]
        return len(live), sum(1 for c in live if c.embedding is not None)

    async def delete_source(self, source):
        if source.is_trained:
            source.status = SourceStatus.REMOVED.value
            return "soft"
        self._drop_chunks(source.id)
        del self.sources[source.id]
        return "hard"

    async def restore_sources(self, agent_id, source_ids):
        restored = []
        for sid in source_ids:
            source = self.sources.get(sid)
            if source and source.agent_id == agent_id and source.status == SourceStatus.REMOVED.value:
                source.status = SourceStatus.READY.value
                restored.append(sid)
        return restored

    async def purge_removed(self, agent_id, source_ids):
        purged = []
        for sid in source_ids:
            source = self.sources.get(sid)
            if source and source.agent_id == agent_id and source.status == SourceStatus.REMOVED.value:
                self._drop_chunks(sid)
                del self.sources[sid]
                purged.append(sid)
        return purged

    def advance(self, seconds: float) -> None:
        self._clock += timedelta(seconds=seconds)

    async def fail_orphaned(self, active_source_ids, reason, stale_after, dry_run=False):
        stuck = {SourceStatus.QUEUED.value, SourceStatus.PROCESSING.value, SourceStatus.CHUNKING.value}
        cutoff = self._clock - timedelta(seconds=stale_after)
        orphans = [
            {"id": s.id, "project_id": s.project_id, "url": s.website_url, "status": s.status}
            for s in sorted(self.sources.values(), key=lambda s: s.created_at)
            if s.type == SourceType.WEBSITE.value
            and s.status in stuck
            and s.updated_at < cutoff
            and s.id not in active_source_ids
        ]
        if not dry_run:
            for orphan in orphans:
                await self.update_source(
                    orphan["id"],
                    status=SourceStatus.ERROR.value,
                    error_message=reason,
                    metadata={"orphaned_at": self._clock.isoformat()},
                )
        return orphans

    async def source_stats(self, agent_id):
        by_type = {t.value: {"count": 0, "size_kb": 0} for t in SourceType}
        for source in await self.list_sources(agent_id):
            by_type[source.type]["count"] += 1
            by_type[source.type]["size_kb"] += source.size_kb or 0
        return {
            "by_type": by_type,
            "total": {
                "count": sum(v["count"] for v in by_type.values()),
                "size_kb": sum(v["size_kb"] for v in by_type.values()),
            },
        }

    async def crawl_metrics(self, recent=10):
        websites = sorted(
            (s for s in self.sources.values() if s.type == SourceType.WEBSITE.value),
            key=lambda s: s.created_at,
            reverse=True,
        )
        latest = websites[:recent]
        n = len(latest)
        return {
            "active_crawls": sum(
                1 for s in websites
                if s.status in (SourceStatus.QUEUED.value, SourceStatus.PROCESSING.value, SourceStatus.CHUNKING.value)
            ),
            "avg_chunks_per_crawl": round(sum(s.chunk_count for s in latest) / n) if n else 0,
            "avg_size_kb_per_crawl": round(sum(s.size_kb for s in latest) / n) if n else 0,
            "total_chunks": len(self.chunks),
            "recent_crawls_analyzed": n,
        }


@pytest.fixture
def store():
    return FakeStore()


# ─── Embeddings / vectors ────────────────────────────────────────────────────

class FakeEmbedder:
    """Deterministic 3-d vectors; ``fail=True`` simulates a backend outage."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[list[str]] = []

    @staticmethod
    def vector_for(text: str) -> list[float]:
        a = sum(ord(ch) for ch in text) % 97 + 1
        b = len(text) % 89 + 1
        return [float(a), float(b), 1.0]

    async def embed_texts(self, texts, batch_size=None):
        if self.fail:
            raise EmbeddingUnavailableError("embedding backend down")
        self.calls.append(list(texts))
        return [self.vector_for(t) for t in texts], 10 * len(texts)

    async def embed_query(self, query):
        if self.fail:
            raise EmbeddingUnavailableError("embedding backend down")
        return self.vector_for(query)


class FakeVectorStore:
    """Keeps points in a dict and scores them by cosine similarity."""

    def __init__(self):
        self.points: dict[str, dict] = {}
        self.upserts = 0

    async def upsert_chunks(self, chunks, batch_size=200):
        for chunk in chunks:
            self.points[str(chunk["id"])] = {"vector": chunk["vector"], "payload": chunk["payload"]}
        self.upserts += len(chunks)

    async def delete_by_source(self, source_id):
        for pid in [p for p, v in self.points.items() if v["payload"]["source_id"] == str(source_id)]:
            del self.points[pid]

    async def search(self, query_vector, agent_id, source_types=None, limit=20, score_threshold=None):
        def cosine(a, b):
            dot = sum(x * y for x, y in zip(a, b))
            return dot / (math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b)))

        hits = []
        for pid, point in self.points.items():
            payload = point["payload"]
            if payload["agent_id"] != str(agent_id):
                continue
            if source_types and payload["source_type"] not in source_types:
                continue
            score = cosine(query_vector, point["vector"])
            if score_threshold is not None and score < score_threshold:
                continue
            hits.append({"id": pid, "score": score, "payload": payload})
        hits.sort(key=lambda h: -h["score"])
        return hits[:limit]


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vectors():
    return FakeVectorStore()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def recorded_events(bus):
    events = []
    bus.subscribe("*", events.append)
    return events


@pytest.fixture
def failing_embedder():
    return FakeEmbedder(fail=True)


@pytest.fixture
def make_page():
    """Build a successful ``PageResult``."""
    return _page


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def make_launcher():
    return FakeLauncher
