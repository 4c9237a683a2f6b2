"""Pydantic schemas for API request/response validation."""

from app.schemas.source import (
    CrawlJob,
    CrawlPhase,
    CrawlProgress,
    EmbeddingStatus,
    QASourceCreate,
    SourceBulkResponse,
    SourceCreateResponse,
    SourceIdsRequest,
    SourceRead,
    TextSourceCreate,
    WebsiteSourceCreate,
)
from app.schemas.search import SearchRequest, SearchResponse, SearchResult

__all__ = [
    "CrawlJob",
    "CrawlPhase",
    "CrawlProgress",
    "EmbeddingStatus",
    "QASourceCreate",
    "SourceBulkResponse",
    "SourceCreateResponse",
    "SourceIdsRequest",
    "SourceRead",
    "TextSourceCreate",
    "WebsiteSourceCreate",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
]
