"""Search schemas."""

from pydantic import BaseModel, Field

from app.config import get_settings
from app.models.source import SourceType

settings = get_settings()


class SearchRequest(BaseModel):
    """Similarity search over an agent's knowledge base."""

    query: str = Field(..., min_length=1, max_length=4000)
    max_chunks: int = Field(default=settings.search_default_max_chunks, ge=1, le=50)
    similarity_threshold: float = Field(default=settings.search_default_threshold, ge=0.0, le=1.0)
    source_types: list[SourceType] | None = None


class SearchResult(BaseModel):
    """One matching chunk."""

    chunk_id: str
    source_id: str
    source_name: str
    source_type: str
    content: str
    score: float
    page_url: str | None = None
    page_title: str | None = None
    position: int = 0


class SearchResponse(BaseModel):
    """Ranked matches, best first."""

    query: str
    results: list[SearchResult]
    count: int
