"""Similarity search and embedding endpoints."""

from uuid import UUID

from fastapi import APIRouter

from app.deps import CurrentAgent, Pipeline, Queue, Retrieval, Store
from app.schemas.search import SearchRequest, SearchResponse, SearchResult
from app.schemas.source import EmbeddingStatus

router = APIRouter()


@router.post("/{agent_id}/search", response_model=SearchResponse)
async def search_knowledge_base(
    agent_id: UUID,
    data: SearchRequest,
    agent: CurrentAgent,
    retrieval: Retrieval,
) -> SearchResponse:
    """Top chunks by similarity. 503 ``embedding_unavailable`` when the backend is down."""
    chunks = await retrieval.search(
        agent.id,
        data.query,
        k=data.max_chunks,
        threshold=data.similarity_threshold,
        source_types=[t.value for t in data.source_types] if data.source_types else None,
    )
    results = [
        SearchResult(
            chunk_id=c.chunk_id,
            source_id=c.source_id,
            source_name=c.source_name,
            source_type=c.source_type,
            content=c.content,
            score=c.score,
            page_url=c.page_url,
            page_title=c.page_title,
            position=c.position,
        )
        for c in chunks
    ]
    return SearchResponse(query=data.query, results=results, count=len(results))


@router.post("/{agent_id}/train")
async def train_agent(
    agent_id: UUID,
    agent: CurrentAgent,
    queue: Queue,
    pipeline: Pipeline,
) -> dict:
    """Embed every chunk of the agent that has no vector yet."""
    job_id = await queue.enqueue_embedding(agent.id)
    if job_id:
        return {"status": "queued", "job_id": job_id}
    embedded = await pipeline.embed_and_store(agent_id=agent.id)
    return {"status": "completed", "embedded": embedded}


@router.get("/{agent_id}/embeddings/status", response_model=EmbeddingStatus)
async def embedding_status(
    agent_id: UUID,
    agent: CurrentAgent,
    store: Store,
) -> EmbeddingStatus:
    """Embedded vs total chunks."""
    total, embedded = await store.embedding_stats(agent.id)
    return EmbeddingStatus(
        agent_id=agent.id,
        total_chunks=total,
        embedded_chunks=embedded,
        pending_chunks=total - embedded,
    )
