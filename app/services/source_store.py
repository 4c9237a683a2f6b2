"""Persistence seam for sources and chunks.

Every write that belongs to a crawl can be made conditional on the source's
``crawl_generation``; a write from a superseded crawl matches no row and is
reported back as ``False``/``None`` instead of clobbering newer state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import delete, func, literal, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.chunking import TextChunk
from app.database import async_session_maker
from app.models import Agent, Chunk, Source, SourceStatus, SourceType
from app.models.source import is_forward_transition

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class ChunkRecord:
    """A persisted chunk joined with the fields the embedding stage needs."""

    id: UUID
    source_id: UUID
    agent_id: UUID
    source_name: str
    source_type: str
    content: str
    position: int
    metadata: dict[str, Any]
    created_at: datetime | None
    embedding: list[float] | None = None

    def payload(self) -> dict[str, Any]:
        """Qdrant payload for this chunk."""
        return {
            "agent_id": str(self.agent_id),
            "source_id": str(self.source_id),
            "source_name": self.source_name,
            "source_type": self.source_type,
            "content": self.content,
            "position": self.position,
            "page_url": self.metadata.get("page_url"),
            "page_title": self.metadata.get("page_title"),
            "inserted_at": self.created_at.isoformat() if self.created_at else "",
        }


def _allowed_current_statuses(new_status: str) -> list[str]:
    return [s.value for s in SourceStatus if is_forward_transition(s.value, new_status)]


class SourceStore:
    """Async store over an ``AsyncSession`` factory."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session_maker):
        self._session_factory = session_factory

    # ── Reads ──

    async def get_source(self, source_id: UUID) -> Source | None:
        async with self._session_factory() as db:
            return await db.get(Source, source_id)

    async def get_agent(self, agent_id: UUID) -> Agent | None:
        async with self._session_factory() as db:
            return await db.get(Agent, agent_id)

    async def list_sources(self, agent_id: UUID, source_type: str | None = None) -> list[Source]:
        """Non-removed sources of an agent, newest first."""
        async with self._session_factory() as db:
            stmt = (
                select(Source)
                .where(Source.agent_id == agent_id)
                .where(Source.status != SourceStatus.REMOVED.value)
                .order_by(Source.created_at.desc())
            )
            if source_type:
                stmt = stmt.where(Source.type == source_type)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # ── Source writes ──

    async def create_source(self, **values: Any) -> Source:
        async with self._session_factory() as db:
            source = Source(**values)
            db.add(source)
            await db.commit()
            await db.refresh(source)
            return source

    async def update_source(
        self,
        source_id: UUID,
        generation: int | None = None,
        metadata: dict[str, Any] | None = None,
        **values: Any,
    ) -> bool:
        """Update columns (and merge ``metadata`` keys) of one source.

        Returns False when no row matched: unknown source, stale generation,
        or a status change that would move the lifecycle backwards.
        """
        stmt = update(Source).where(Source.id == source_id)
        if generation is not None:
            stmt = stmt.where(Source.crawl_generation == generation)
        if "status" in values:
            status = SourceStatus(values["status"]).value
            values["status"] = status
            stmt = stmt.where(Source.status.in_(_allowed_current_statuses(status)))
        if metadata:
            values["source_metadata"] = func.coalesce(
                Source.source_metadata, literal({}, JSONB)
            ).op("||")(literal(metadata, JSONB))
        if not values:
            return True

        async with self._session_factory() as db:
            result = await db.execute(stmt.values(**values))
            await db.commit()
            updated = result.rowcount > 0
        if not updated:
            logger.debug("Update of source %s skipped (generation=%s)", source_id, generation)
        return updated

    async def merge_metadata(
        self,
        source_id: UUID,
        values: dict[str, Any],
        generation: int | None = None,
    ) -> bool:
        return await self.update_source(source_id, generation=generation, metadata=values)

    async def begin_recrawl(self, source_id: UUID, settings_metadata: dict[str, Any]) -> int | None:
        """Reset a source for a new crawl: chunks deleted, status pending, generation bumped.

        Returns the new generation, or None if the source does not exist.
        """
        async with self._session_factory() as db:
            await db.execute(delete(Chunk).where(Chunk.source_id == source_id))
            result = await db.execute(
                update(Source)
                .where(Source.id == source_id)
                .values(
                    status=SourceStatus.PENDING.value,
                    error_message=None,
                    chunk_count=0,
                    size_kb=0,
                    is_trained=False,
                    crawl_generation=Source.crawl_generation + 1,
                    source_metadata=literal(settings_metadata, JSONB),
                )
                .returning(Source.crawl_generation)
            )
            generation = result.scalar_one_or_none()
            await db.commit()
            return generation

    # ── Chunks ──

    async def replace_chunks(
        self,
        source: Source,
        chunks: list[TextChunk],
        generation: int | None = None,
    ) -> list[UUID] | None:
        """Delete the source's chunks and insert ``chunks`` in one transaction.

        Returns the new chunk ids, or None when ``generation`` is stale.
        """
        async with self._session_factory() as db:
            if generation is not None:
                current = await db.scalar(
                    select(Source.crawl_generation)
                    .where(Source.id == source.id)
                    .with_for_update()
                )
                if current != generation:
                    await db.rollback()
                    return None

            await db.execute(delete(Chunk).where(Chunk.source_id == source.id))
            rows = []
            for chunk in chunks:
                row = Chunk(
                    source_id=source.id,
                    agent_id=source.agent_id,
                    project_id=source.project_id,
                    position=chunk.chunk_index,
                    content=chunk.content,
                    content_hash=chunk.content_hash,
                    token_count=chunk.token_count,
                    chunk_metadata=chunk.metadata,
                    content_tsv=func.to_tsvector(settings.postgres_fts_config, chunk.content),
                )
                db.add(row)
                rows.append(row)
            await db.flush()
            ids = [row.id for row in rows]
            await db.commit()
        logger.info("Stored %d chunks for source %s", len(ids), source.id)
        return ids

    async def _chunk_records(self, stmt) -> list[ChunkRecord]:
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [
                ChunkRecord(
                    id=chunk.id,
                    source_id=chunk.source_id,
                    agent_id=chunk.agent_id,
                    source_name=name,
                    source_type=source_type,
                    content=chunk.content,
                    position=chunk.position,
                    metadata=chunk.chunk_metadata or {},
                    created_at=chunk.created_at,
                    embedding=chunk.embedding,
                )
                for chunk, name, source_type in result.all()
            ]

    def _chunk_query(self, source_id: UUID | None, agent_id: UUID | None):
        stmt = (
            select(Chunk, Source.name, Source.type)
            .join(Source, Source.id == Chunk.source_id)
            .where(Source.status != SourceStatus.REMOVED.value)
            .order_by(Chunk.created_at, Chunk.position)
        )
        if source_id is not None:
            stmt = stmt.where(Chunk.source_id == source_id)
        if agent_id is not None:
            stmt = stmt.where(Chunk.agent_id == agent_id)
        return stmt

    async def list_unembedded_chunks(
        self,
        source_id: UUID | None = None,
        agent_id: UUID | None = None,
    ) -> list[ChunkRecord]:
        if source_id is None and agent_id is None:
            raise ValueError("source_id or agent_id is required")
        return await self._chunk_records(
            self._chunk_query(source_id, agent_id).where(Chunk.embedding.is_(None))
        )

    async def list_embedded_chunks(self, source_id: UUID) -> list[ChunkRecord]:
        return await self._chunk_records(
            self._chunk_query(source_id, None).where(Chunk.embedding.is_not(None))
        )

    async def set_embeddings(self, vectors: dict[UUID, list[float]]) -> None:
        if not vectors:
            return
        async with self._session_factory() as db:
            for chunk_id, vector in vectors.items():
                await db.execute(
                    update(Chunk).where(Chunk.id == chunk_id).values(embedding=vector)
                )
            await db.commit()

    async def mark_trained(self, source_ids: list[UUID]) -> None:
        """Flag sources whose chunks are all embedded."""
        if not source_ids:
            return
        async with self._session_factory() as db:
            pending = select(Chunk.id).where(
                Chunk.source_id == Source.id,
                Chunk.embedding.is_(None),
            ).exists()
            await db.execute(
                update(Source)
                .where(Source.id.in_(source_ids))
                .where(~pending)
                .values(is_trained=True)
            )
            await db.commit()

    async def embedding_stats(self, agent_id: UUID) -> tuple[int, int]:
        """(total, embedded) chunk counts for an agent's live sources."""
        async with self._session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(Chunk.id),
                    func.count(Chunk.embedding),
                )
                .join(Source, Source.id == Chunk.source_id)
                .where(Chunk.agent_id == agent_id)
                .where(Source.status != SourceStatus.REMOVED.value)
            )).one()
            return int(row[0]), int(row[1])

    # ── Delete / restore ──

    async def delete_source(self, source: Source) -> str:
        """Soft-delete a trained source, hard-delete an untrained one.

        Returns ``"soft"`` or ``"hard"``.
        """
        async with self._session_factory() as db:
            if source.is_trained:
                await db.execute(
                    update(Source)
                    .where(Source.id == source.id)
                    .values(status=SourceStatus.REMOVED.value)
                )
                kind = "soft"
            else:
                await db.execute(delete(Chunk).where(Chunk.source_id == source.id))
                await db.execute(delete(Source).where(Source.id == source.id))
                kind = "hard"
            await db.commit()
        logger.info("Deleted source %s (%s)", source.id, kind)
        return kind

    async def restore_sources(self, agent_id: UUID, source_ids: list[UUID]) -> list[UUID]:
        """Move removed sources back to ready. Returns the restored ids."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Source)
                .where(Source.agent_id == agent_id)
                .where(Source.id.in_(source_ids))
                .where(Source.status == SourceStatus.REMOVED.value)
                .values(status=SourceStatus.READY.value)
                .returning(Source.id)
            )
            restored = list(result.scalars().all())
            await db.commit()
            return restored

    async def purge_removed(self, agent_id: UUID, source_ids: list[UUID]) -> list[UUID]:
        """Permanently delete removed sources and their chunks. Returns the purged ids."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Source.id)
                .where(Source.agent_id == agent_id)
                .where(Source.id.in_(source_ids))
                .where(Source.status == SourceStatus.REMOVED.value)
            )
            ids = list(result.scalars().all())
            if ids:
                await db.execute(delete(Chunk).where(Chunk.source_id.in_(ids)))
                await db.execute(delete(Source).where(Source.id.in_(ids)))
            await db.commit()
            return ids

    # ── Maintenance ──

    async def fail_orphaned(
        self,
        active_source_ids: set[UUID],
        reason: str,
        stale_after: float,
        dry_run: bool = False,
    ) -> list[dict[str, Any]]:
        """Move website sources stuck mid-crawl with no live job to ``error``.

        A source qualifies when it is queued, processing or chunking, is not in
        ``active_source_ids`` and has not been written for ``stale_after``
        seconds (running crawls touch ``updated_at`` with every progress write).
        With ``dry_run`` nothing is written.
        """
        stuck = [
            SourceStatus.QUEUED.value,
            SourceStatus.PROCESSING.value,
            SourceStatus.CHUNKING.value,
        ]
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after)
        conditions = [
            Source.type == SourceType.WEBSITE.value,
            Source.status.in_(stuck),
            Source.updated_at < cutoff,
        ]
        if active_source_ids:
            conditions.append(Source.id.not_in(list(active_source_ids)))

        async with self._session_factory() as db:
            rows = (await db.execute(
                select(Source.id, Source.project_id, Source.website_url, Source.status)
                .where(*conditions)
                .order_by(Source.created_at)
            )).all()
            orphaned = [
                {"id": row.id, "project_id": row.project_id, "url": row.website_url, "status": row.status}
                for row in rows
            ]
            if dry_run or not orphaned:
                return orphaned

            # Re-check the conditions so a crawl that moved on meanwhile is left alone
            result = await db.execute(
                update(Source)
                .where(Source.id.in_([o["id"] for o in orphaned]))
                .where(*conditions)
                .values(
                    status=SourceStatus.ERROR.value,
                    error_message=reason,
                    source_metadata=func.coalesce(
                        Source.source_metadata, literal({}, JSONB)
                    ).op("||")(literal({"orphaned_at": datetime.now(timezone.utc).isoformat()}, JSONB)),
                )
                .returning(Source.id)
            )
            failed = set(result.scalars().all())
            await db.commit()
        return [o for o in orphaned if o["id"] in failed]

    async def source_stats(self, agent_id: UUID) -> dict[str, Any]:
        """Count and size of an agent's live sources, per type and in total."""
        async with self._session_factory() as db:
            rows = (await db.execute(
                select(Source.type, func.count(Source.id), func.coalesce(func.sum(Source.size_kb), 0))
                .where(Source.agent_id == agent_id)
                .where(Source.status != SourceStatus.REMOVED.value)
                .group_by(Source.type)
            )).all()
        by_type = {t.value: {"count": 0, "size_kb": 0} for t in SourceType}
        for source_type, count, size_kb in rows:
            by_type[source_type] = {"count": int(count), "size_kb": int(size_kb)}
        return {
            "by_type": by_type,
            "total": {
                "count": sum(v["count"] for v in by_type.values()),
                "size_kb": sum(v["size_kb"] for v in by_type.values()),
            },
        }

    async def crawl_metrics(self, recent: int = 10) -> dict[str, Any]:
        """Averages over the most recent website crawls plus system-wide counts."""
        async with self._session_factory() as db:
            recent_rows = (await db.execute(
                select(Source.chunk_count, Source.size_kb)
                .where(Source.type == SourceType.WEBSITE.value)
                .order_by(Source.created_at.desc())
                .limit(recent)
            )).all()
            active = (await db.execute(
                select(func.count(Source.id))
                .where(Source.type == SourceType.WEBSITE.value)
                .where(Source.status.in_([
                    SourceStatus.QUEUED.value,
                    SourceStatus.PROCESSING.value,
                    SourceStatus.CHUNKING.value,
                ]))
            )).scalar_one()
            total_chunks = (await db.execute(select(func.count(Chunk.id)))).scalar_one()

        n = len(recent_rows)
        return {
            "active_crawls": int(active),
            "avg_chunks_per_crawl": round(sum(r[0] or 0 for r in recent_rows) / n) if n else 0,
            "avg_size_kb_per_crawl": round(sum(r[1] or 0 for r in recent_rows) / n) if n else 0,
            "total_chunks": int(total_chunks),
            "recent_crawls_analyzed": n,
        }
