"""Similarity search over an agent's knowledge base."""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.errors import EmbeddingUnavailableError
from app.core.vector_store import VectorStore, vector_store
from app.services.embedding import EmbeddingService, embedding_service

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class RetrievedChunk:
    """A chunk retrieved from search."""

    chunk_id: str
    source_id: str
    source_name: str
    source_type: str
    content: str
    score: float
    page_url: str | None = None
    page_title: str | None = None
    position: int = 0
    inserted_at: str = field(default="", repr=False)


def rank_matches(
    matches: list[RetrievedChunk],
    k: int,
    threshold: float,
) -> list[RetrievedChunk]:
    """Order by similarity (desc), break ties by insertion order, drop below threshold, keep k."""
    if k <= 0:
        return []
    kept = [m for m in matches if m.score >= threshold]
    kept.sort(key=lambda m: (-m.score, m.inserted_at, m.position))
    return kept[:k]


class RetrievalService:
    """Semantic search with a keyword fallback for chat context."""

    def __init__(
        self,
        embedder: EmbeddingService | None = None,
        store: VectorStore | None = None,
        candidate_multiplier: int = 4,
    ):
        self.embedder = embedder or embedding_service
        self.store = store or vector_store
        self.candidate_multiplier = max(1, candidate_multiplier)

    async def search(
        self,
        agent_id: UUID,
        query: str,
        k: int = settings.search_default_max_chunks,
        threshold: float = settings.search_default_threshold,
        source_types: list[str] | None = None,
    ) -> list[RetrievedChunk]:
        """Top-k chunks of an agent by cosine similarity to ``query``.

        Raises:
            EmbeddingUnavailableError: Embedding backend or vector index down.
        """
        if not query.strip() or k <= 0:
            return []

        query_vector = await self.embedder.embed_query(query)

        # Over-fetch so equal-score ties can be ordered by insertion
        try:
            results = await self.store.search(
                query_vector=query_vector,
                agent_id=agent_id,
                source_types=source_types,
                limit=k * self.candidate_multiplier,
                score_threshold=threshold,
            )
        except Exception as e:
            logger.warning("Vector search failed for agent %s: %s", agent_id, e)
            raise EmbeddingUnavailableError(f"Vector index unavailable: {e}") from e

        matches = []
        for result in results:
            payload = result["payload"]
            matches.append(RetrievedChunk(
                chunk_id=result["id"],
                source_id=payload.get("source_id", ""),
                source_name=payload.get("source_name", ""),
                source_type=payload.get("source_type", ""),
                content=payload.get("content", ""),
                score=result["score"],
                page_url=payload.get("page_url"),
                page_title=payload.get("page_title"),
                position=payload.get("position", 0),
                inserted_at=payload.get("inserted_at", ""),
            ))

        return rank_matches(matches, k, threshold)

    async def retrieve_context(
        self,
        agent_id: UUID,
        query: str,
        k: int = settings.search_default_max_chunks,
        threshold: float = settings.search_default_threshold,
        source_types: list[str] | None = None,
        db: AsyncSession | None = None,
    ) -> list[RetrievedChunk]:
        """Chunks for grounding a chat answer.

        Falls back to Postgres full-text search when semantic search is
        unavailable and a db session is provided.
        """
        try:
            return await self.search(agent_id, query, k, threshold, source_types)
        except EmbeddingUnavailableError:
            if db is None:
                raise
            logger.warning("Semantic search unavailable, using keyword search for agent %s", agent_id)

        from app.core.retrieval.keyword_retriever import keyword_search

        return await keyword_search(
            db=db,
            agent_id=agent_id,
            source_types=source_types,
            query=query,
            topk=k,
            fts_config=settings.postgres_fts_config,
        )

    def build_context(
        self,
        chunks: list[RetrievedChunk],
        max_tokens: int = 4000,
    ) -> str:
        """Build context string from retrieved chunks."""
        if not chunks:
            return ""

        context_parts = []
        estimated_tokens = 0

        for chunk in chunks:
            source_info = f"[Source: {chunk.source_name}"
            if chunk.page_title and chunk.page_title != chunk.source_name:
                source_info += f" - {chunk.page_title}"
            if chunk.page_url:
                source_info += f" ({chunk.page_url})"
            source_info += "]"

            chunk_text = f"{source_info}\n{chunk.content}"

            # Rough token estimate (4 chars per token)
            chunk_tokens = len(chunk_text) // 4

            if estimated_tokens + chunk_tokens > max_tokens:
                break

            context_parts.append(chunk_text)
            estimated_tokens += chunk_tokens

        return "\n\n---\n\n".join(context_parts)


# Singleton instance
retrieval_service = RetrievalService()
