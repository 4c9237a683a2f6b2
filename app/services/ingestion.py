"""Ingestion pipeline: crawl → chunk → embed, with progress events and status bookkeeping.

``run_website_crawl`` is the single routine behind both the arq worker task
and the in-process direct runner. Whatever path a crawl takes (success, page
errors, timeout, crash, cancellation) the source gets exactly one terminal
status write and at most one terminal crawl event.
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from app.config import get_settings
from app.core.chunking import Chunker
from app.core.errors import (
    CrawlSupersededError,
    CrawlTimeoutError,
    EmbeddingUnavailableError,
    InvalidCrawlRequestError,
    PoolExhaustedError,
)
from app.core.events import EventBus
from app.core.vector_store import VectorStore, vector_store
from app.models import Source, SourceStatus, SourceType
from app.schemas.events import ChunkEvent, CrawlEvent, EmbedEvent, Event, SourceEvent
from app.schemas.source import CrawlJob, CrawlPhase, CrawlProgress
from app.services.crawl_orchestrator import CrawlOrchestrator, CrawlOutcome, page_metadata
from app.services.embedding import EmbeddingService, embedding_service
from app.services.source_store import SourceStore

settings = get_settings()
logger = logging.getLogger(__name__)

ORPHANED_REASON = "Orphaned from queue failure, please delete and re-add"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _size_kb(texts: list[str]) -> int:
    total = sum(len(t.encode("utf-8")) for t in texts)
    return math.ceil(total / 1024) if total else 0


class _CrawlRun:
    """Per-invocation bookkeeping for one crawl job."""

    def __init__(self, job: CrawlJob, job_id: str | None):
        self.job = job
        self.job_id = job_id
        self.terminal_written = False
        self.last_progress: CrawlProgress | None = None


class IngestionPipeline:
    """Runs crawl jobs and text ingestion against a store, a bus and the embedding stack."""

    def __init__(
        self,
        store: SourceStore,
        bus: EventBus,
        orchestrator: CrawlOrchestrator | None = None,
        embedder: EmbeddingService | None = None,
        vectors: VectorStore | None = None,
        embedding_batch_size: int = settings.embedding_batch_size,
    ):
        self.store = store
        self.bus = bus
        self.orchestrator = orchestrator
        self.embedder = embedder or embedding_service
        self.vectors = vectors or vector_store
        self.embedding_batch_size = max(1, embedding_batch_size)

    # ── Events ──

    async def publish(self, event: Event) -> None:
        try:
            await self.bus.publish(event)
        except Exception:
            logger.warning("Failed to publish %s for source %s", event.type, event.source_id, exc_info=True)

    # ── Website crawl ──

    async def run_website_crawl(self, job: CrawlJob, job_id: str | None = None) -> str:
        """Crawl, chunk and embed one website source.

        Returns the outcome: ``ready``, ``error``, ``superseded`` or ``missing``.

        Raises:
            PoolExhaustedError: No browser available; the source is left
                ``processing`` so the caller can retry or fail it.
        """
        if self.orchestrator is None:
            raise RuntimeError("IngestionPipeline has no crawl orchestrator")

        run = _CrawlRun(job, job_id)
        source = await self.store.get_source(job.source_id)
        if source is None:
            logger.warning("Source %s no longer exists, dropping crawl job", job.source_id)
            return "missing"
        if source.crawl_generation != job.generation:
            logger.info(
                "Crawl job for source %s is stale (generation %d, current %d)",
                job.source_id,
                job.generation,
                source.crawl_generation,
            )
            return "superseded"

        try:
            agent = await self.store.get_agent(job.agent_id)
            if agent is None:
                await self._fail(run, f"Agent {job.agent_id} not found")
                return "error"

            if not await self.store.update_source(
                job.source_id,
                generation=job.generation,
                status=SourceStatus.PROCESSING.value,
                error_message=None,
            ):
                return "superseded"

            await self.publish(CrawlEvent.from_progress(
                "crawl:started",
                job.source_id,
                job.project_id,
                CrawlProgress(phase=CrawlPhase.DISCOVERING, total=job.max_pages, current_url=job.url),
                job_id=job_id,
            ))

            async def on_progress(progress: CrawlProgress) -> None:
                run.last_progress = progress
                written = await self.store.merge_metadata(
                    job.source_id,
                    {"last_progress": progress.model_dump(mode="json")},
                    generation=job.generation,
                )
                if not written:
                    raise CrawlSupersededError(f"Source {job.source_id} was re-crawled")
                await self.publish(CrawlEvent.from_progress(
                    "crawl:progress", job.source_id, job.project_id, progress, job_id=job_id,
                ))

            try:
                outcome = await self.orchestrator.crawl(job, on_progress)
            except InvalidCrawlRequestError as e:
                await self._fail(run, str(e))
                return "error"

            if outcome.timed_out:
                await self._fail_timeout(run, outcome)
                return "error"

            return await self._store_crawl(run, source, outcome)

        except CrawlSupersededError as e:
            logger.info("Abandoning crawl: %s", e)
            return "superseded"
        except PoolExhaustedError:
            raise
        except asyncio.CancelledError:
            await self._fail(run, "Crawl was cancelled")
            raise
        except Exception as e:
            logger.exception("Crawl of source %s failed", job.source_id)
            await self._fail(run, str(e)[:2000] or type(e).__name__)
            raise

    async def _store_crawl(self, run: _CrawlRun, source: Source, outcome: CrawlOutcome) -> str:
        job = run.job
        total_pages = len(outcome.pages)
        completed = CrawlProgress(
            phase=CrawlPhase.COMPLETED,
            current=outcome.attempted,
            total=max(outcome.attempted, 1),
            discovered_links=outcome.discovered_links,
            avg_time_per_page=run.last_progress.avg_time_per_page if run.last_progress else 0.0,
        )
        await self.publish(CrawlEvent.from_progress(
            "crawl:completed", job.source_id, job.project_id, completed, job_id=run.job_id,
        ))

        if not await self.store.update_source(
            job.source_id, generation=job.generation, status=SourceStatus.CHUNKING.value,
        ):
            return "superseded"

        await self.publish(ChunkEvent(
            type="chunk:started",
            source_id=str(job.source_id),
            project_id=str(job.project_id),
            job_id=run.job_id,
        ))
        chunker = Chunker.for_source_type(SourceType.WEBSITE.value)
        chunks = chunker.chunk_pages([(page.content, page_metadata(page)) for page in outcome.pages])
        chunk_ids = await self.store.replace_chunks(source, chunks, generation=job.generation)
        if chunk_ids is None:
            return "superseded"
        await self.publish(ChunkEvent(
            type="chunk:completed",
            source_id=str(job.source_id),
            project_id=str(job.project_id),
            job_id=run.job_id,
            chunks_created=len(chunk_ids),
            total_chunks=len(chunk_ids),
            progress=100,
        ))

        if not outcome.pages:
            logger.warning(
                "Crawl of %s produced no usable pages (%d errors)",
                job.url,
                len(outcome.errors),
            )

        written = await self.store.update_source(
            job.source_id,
            generation=job.generation,
            status=SourceStatus.READY.value,
            chunk_count=len(chunk_ids),
            size_kb=_size_kb([page.content for page in outcome.pages]),
            error_message=None,
            metadata={
                "crawled_pages": outcome.urls,
                "pages_crawled": total_pages,
                "discovered_links": outcome.discovered_links,
                "crawl_errors": outcome.errors,
                "total_chunks": len(chunk_ids),
                "crawl_completed_at": _now_iso(),
                "last_progress": completed.model_dump(mode="json"),
            },
        )
        if not written:
            return "superseded"
        run.terminal_written = True
        await self.publish(SourceEvent(
            source_id=str(job.source_id),
            project_id=str(job.project_id),
            job_id=run.job_id,
            status=SourceStatus.READY.value,
            chunk_count=len(chunk_ids),
        ))
        logger.info(
            "Source %s ready: %d pages, %d chunks, %d page errors",
            job.source_id,
            total_pages,
            len(chunk_ids),
            len(outcome.errors),
        )

        if chunk_ids:
            await self._embed_quietly(job.source_id, run.job_id)
        return SourceStatus.READY.value

    async def _fail_timeout(self, run: _CrawlRun, outcome: CrawlOutcome) -> None:
        error = CrawlTimeoutError(self.orchestrator.timeout)
        progress = CrawlProgress(
            phase=CrawlPhase.TIMEOUT,
            current=outcome.attempted,
            total=run.last_progress.total if run.last_progress else outcome.attempted,
            discovered_links=outcome.discovered_links,
        )
        await self._fail(
            run,
            str(error),
            progress=progress,
            metadata={
                "crawled_pages": outcome.urls,
                "pages_crawled": len(outcome.pages),
                "discovered_links": outcome.discovered_links,
                "crawl_errors": outcome.errors,
            },
        )

    async def _fail(
        self,
        run: _CrawlRun,
        reason: str,
        progress: CrawlProgress | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Write the terminal ``error`` status and the terminal ``crawl:failed`` event once."""
        if run.terminal_written:
            return False
        job = run.job
        progress = progress or CrawlProgress(
            phase=CrawlPhase.FAILED,
            current=run.last_progress.current if run.last_progress else 0,
            total=run.last_progress.total if run.last_progress else 0,
        )
        written = await self.store.update_source(
            job.source_id,
            generation=job.generation,
            status=SourceStatus.ERROR.value,
            error_message=reason,
            metadata={**(metadata or {}), "last_progress": progress.model_dump(mode="json")},
        )
        run.terminal_written = True
        if not written:
            logger.info("Terminal error for source %s discarded (stale or already terminal)", job.source_id)
            return False

        logger.warning("Source %s failed: %s", job.source_id, reason)
        await self.publish(CrawlEvent.from_progress(
            "crawl:failed", job.source_id, job.project_id, progress, job_id=run.job_id, error=reason,
        ))
        await self.publish(SourceEvent(
            source_id=str(job.source_id),
            project_id=str(job.project_id),
            job_id=run.job_id,
            status=SourceStatus.ERROR.value,
            error_message=reason,
        ))
        return True

    async def fail_crawl(self, job: CrawlJob, reason: str, job_id: str | None = None) -> bool:
        """Force a terminal error for a job that died before writing one."""
        return await self._fail(_CrawlRun(job, job_id), reason)

    async def fail_orphaned(
        self,
        active_source_ids: set[UUID],
        dry_run: bool = False,
    ) -> list[dict[str, Any]]:
        """Fail website sources left mid-crawl by a job that no longer exists.

        ``active_source_ids`` are the sources with a live arq job or direct
        task; those are never touched. Returns the orphans found (and, unless
        ``dry_run``, failed).
        """
        orphans = await self.store.fail_orphaned(
            active_source_ids,
            reason=ORPHANED_REASON,
            stale_after=settings.orphan_grace_seconds,
            dry_run=dry_run,
        )
        if dry_run:
            return orphans

        for orphan in orphans:
            logger.warning("Source %s orphaned while %s, marked as error", orphan["id"], orphan["status"])
            await self.publish(CrawlEvent.from_progress(
                "crawl:failed",
                orphan["id"],
                orphan["project_id"],
                CrawlProgress(phase=CrawlPhase.FAILED, current_url=orphan["url"]),
                error=ORPHANED_REASON,
            ))
            await self.publish(SourceEvent(
                source_id=str(orphan["id"]),
                project_id=str(orphan["project_id"]),
                status=SourceStatus.ERROR.value,
                error_message=ORPHANED_REASON,
            ))
        return orphans

    # ── Text / Q&A ──

    async def ingest_text(
        self,
        agent_id: UUID,
        project_id: UUID,
        name: str,
        content: str,
        source_type: str = SourceType.TEXT.value,
        extra_metadata: dict[str, Any] | None = None,
    ) -> Source:
        """Create a text or Q&A source, chunk it in place and embed it."""
        source = await self.store.create_source(
            agent_id=agent_id,
            project_id=project_id,
            type=source_type,
            name=name,
            status=SourceStatus.CHUNKING.value,
            source_metadata=dict(extra_metadata or {}),
        )
        await self.publish(ChunkEvent(
            type="chunk:started",
            source_id=str(source.id),
            project_id=str(project_id),
        ))

        chunker = Chunker.for_source_type(source_type)
        chunks = chunker.chunk_pages([(content, {"source_type": source_type})])
        chunk_ids = await self.store.replace_chunks(source, chunks) or []
        await self.store.update_source(
            source.id,
            status=SourceStatus.READY.value,
            chunk_count=len(chunk_ids),
            size_kb=_size_kb([content]),
            metadata={"total_chunks": len(chunk_ids)},
        )
        await self.publish(ChunkEvent(
            type="chunk:completed",
            source_id=str(source.id),
            project_id=str(project_id),
            chunks_created=len(chunk_ids),
            total_chunks=len(chunk_ids),
            progress=100,
        ))

        if chunk_ids:
            await self._embed_quietly(source.id, None)
        return await self.store.get_source(source.id) or source

    async def ingest_qa(
        self,
        agent_id: UUID,
        project_id: UUID,
        question: str,
        answer: str,
    ) -> Source:
        content = f"Question: {question.strip()}\nAnswer: {answer.strip()}"
        return await self.ingest_text(
            agent_id,
            project_id,
            name=question.strip()[:255],
            content=content,
            source_type=SourceType.QA.value,
            extra_metadata={"question": question, "answer": answer},
        )

    # ── Embeddings ──

    async def _embed_quietly(self, source_id: UUID, job_id: str | None) -> None:
        try:
            await self.embed_and_store(source_id=source_id, job_id=job_id)
        except EmbeddingUnavailableError as e:
            logger.warning("Embedding deferred for source %s: %s", source_id, e)

    async def embed_and_store(
        self,
        source_id: UUID | None = None,
        agent_id: UUID | None = None,
        job_id: str | None = None,
    ) -> int:
        """Embed every chunk that has no vector yet. Returns the number embedded.

        Safe to re-run: already-embedded chunks are skipped and Qdrant points
        are keyed by chunk id.

        Raises:
            EmbeddingUnavailableError: Backend down; chunks stay without vectors
                and the source keeps ``is_trained=False``.
        """
        records = await self.store.list_unembedded_chunks(source_id=source_id, agent_id=agent_id)
        if not records:
            if source_id is not None:
                await self.store.mark_trained([source_id])
            return 0

        by_source: dict[UUID, list] = {}
        for record in records:
            by_source.setdefault(record.source_id, []).append(record)

        embedded = 0
        for sid, group in by_source.items():
            source = await self.store.get_source(sid)
            project_id = str(source.project_id) if source else ""
            embedded += await self._embed_source_chunks(sid, project_id, group, job_id)
        return embedded

    async def _embed_source_chunks(
        self,
        source_id: UUID,
        project_id: str,
        records: list,
        job_id: str | None,
    ) -> int:
        total = len(records)
        tokens_used = 0
        done = 0
        await self.publish(EmbedEvent(
            type="embed:started",
            source_id=str(source_id),
            project_id=project_id,
            job_id=job_id,
            total_chunks=total,
        ))
        try:
            for i in range(0, total, self.embedding_batch_size):
                batch = records[i:i + self.embedding_batch_size]
                vectors, tokens = await self.embedder.embed_texts([r.content for r in batch])
                try:
                    await self.vectors.upsert_chunks([
                        {"id": str(r.id), "vector": vec, "payload": r.payload()}
                        for r, vec in zip(batch, vectors)
                    ])
                except Exception as e:
                    raise EmbeddingUnavailableError(f"Vector index unavailable: {e}") from e
                await self.store.set_embeddings({r.id: vec for r, vec in zip(batch, vectors)})

                done += len(batch)
                tokens_used += tokens
                await self.publish(EmbedEvent(
                    type="embed:progress",
                    source_id=str(source_id),
                    project_id=project_id,
                    job_id=job_id,
                    chunks_embedded=done,
                    total_chunks=total,
                    tokens_used=tokens_used,
                    progress=round(done * 100 / total),
                ))
        except EmbeddingUnavailableError as e:
            await self.store.merge_metadata(source_id, {"embedding_error": str(e)})
            await self.publish(EmbedEvent(
                type="embed:failed",
                source_id=str(source_id),
                project_id=project_id,
                job_id=job_id,
                chunks_embedded=done,
                total_chunks=total,
                tokens_used=tokens_used,
                error=str(e),
            ))
            raise

        await self.store.mark_trained([source_id])
        await self.store.merge_metadata(source_id, {"embedding_error": None})
        await self.publish(EmbedEvent(
            type="embed:completed",
            source_id=str(source_id),
            project_id=project_id,
            job_id=job_id,
            chunks_embedded=done,
            total_chunks=total,
            tokens_used=tokens_used,
            progress=100,
        ))
        logger.info("Embedded %d chunks for source %s (%d tokens)", done, source_id, tokens_used)
        return done

    # ── Delete / restore ──

    async def delete_sources(self, agent_id: UUID, source_ids: list[UUID]) -> dict[str, int]:
        """Soft-delete trained sources, hard-delete the rest. Vectors are dropped either way."""
        counts = {"soft": 0, "hard": 0}
        for sid in source_ids:
            source = await self.store.get_source(sid)
            if source is None or source.agent_id != agent_id:
                continue
            if source.status == SourceStatus.REMOVED.value:
                continue
            kind = await self.store.delete_source(source)
            counts[kind] += 1
            await self.drop_vectors(sid)
            await self.publish(SourceEvent(
                source_id=str(sid),
                project_id=str(source.project_id),
                status=SourceStatus.REMOVED.value if kind == "soft" else "deleted",
            ))
        return counts

    async def restore_sources(self, agent_id: UUID, source_ids: list[UUID]) -> list[UUID]:
        """Bring removed sources back and re-index their stored vectors."""
        restored = await self.store.restore_sources(agent_id, source_ids)
        for sid in restored:
            records = await self.store.list_embedded_chunks(sid)
            try:
                await self.vectors.upsert_chunks([
                    {"id": str(r.id), "vector": r.embedding, "payload": r.payload()}
                    for r in records
                ])
            except Exception:
                logger.warning("Could not re-index restored source %s", sid, exc_info=True)
        return restored

    async def purge_sources(self, agent_id: UUID, source_ids: list[UUID]) -> list[UUID]:
        purged = await self.store.purge_removed(agent_id, source_ids)
        for sid in purged:
            await self.drop_vectors(sid)
        return purged

    async def drop_vectors(self, source_id: UUID) -> None:
        try:
            await self.vectors.delete_by_source(source_id)
        except Exception:
            logger.warning("Failed to delete vectors for source %s", source_id, exc_info=True)
