"""Qdrant vector index for chunk embeddings."""

import logging
from typing import Any
from uuid import UUID

from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointStruct,
    VectorParams,
)

from app.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Payload keys used in filters get a keyword index
_INDEXED_FIELDS = ("agent_id", "source_id", "source_type")


def _agent_filter(agent_id: UUID, source_types: list[str] | None = None) -> Filter:
    conditions: list[Any] = [FieldCondition(key="agent_id", match=MatchValue(value=str(agent_id)))]
    if source_types:
        conditions.append(FieldCondition(key="source_type", match=MatchAny(any=list(source_types))))
    return Filter(must=conditions)


class VectorStore:
    """One cosine collection shared by all agents; every query is agent-scoped.

    Point ids are chunk ids, so re-upserting a chunk overwrites its vector.
    """

    def __init__(
        self,
        client: AsyncQdrantClient | None = None,
        collection_name: str = settings.qdrant_collection,
        vector_size: int = settings.embedding_dimensions,
    ) -> None:
        self.client = client or AsyncQdrantClient(url=settings.qdrant_url)
        self.collection_name = collection_name
        self.vector_size = vector_size
        self._ready = False

    async def ensure_collection(self) -> None:
        """Create the collection and its payload indexes on first use."""
        if self._ready:
            return
        existing = {c.name for c in (await self.client.get_collections()).collections}
        if self.collection_name not in existing:
            logger.info("Creating Qdrant collection %s (%d dims)", self.collection_name, self.vector_size)
            await self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
            )
            for field_name in _INDEXED_FIELDS:
                await self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema="keyword",
                )
        self._ready = True

    async def upsert_chunks(self, chunks: list[dict[str, Any]], batch_size: int = 200) -> None:
        """Write ``{"id", "vector", "payload"}`` dicts as points, ``batch_size`` per request."""
        if not chunks:
            return
        await self.ensure_collection()

        for start in range(0, len(chunks), batch_size):
            await self.client.upsert(
                collection_name=self.collection_name,
                points=[
                    PointStruct(id=str(c["id"]), vector=c["vector"], payload=c["payload"])
                    for c in chunks[start:start + batch_size]
                ],
            )

    async def delete_by_source(self, source_id: UUID) -> None:
        """Drop every point of a source. A missing collection counts as already empty."""
        try:
            await self.client.delete(
                collection_name=self.collection_name,
                points_selector=Filter(
                    must=[FieldCondition(key="source_id", match=MatchValue(value=str(source_id)))]
                ),
            )
        except UnexpectedResponse as e:
            if e.status_code != 404:
                raise

    async def search(
        self,
        query_vector: list[float],
        agent_id: UUID,
        source_types: list[str] | None = None,
        limit: int = 20,
        score_threshold: float | None = None,
    ) -> list[dict[str, Any]]:
        """Nearest points of one agent as ``{"id", "score", "payload"}`` dicts, best first."""
        await self.ensure_collection()
        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=query_vector,
            query_filter=_agent_filter(agent_id, source_types),
            limit=limit,
            score_threshold=score_threshold,
            with_payload=True,
        )
        return [
            {"id": str(point.id), "score": point.score, "payload": point.payload or {}}
            for point in response.points
        ]


# Singleton instance
vector_store = VectorStore()
