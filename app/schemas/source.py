"""Source schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.source import SourceStatus, SourceType


class CrawlPhase(str, Enum):
    """Phase reported in crawl progress."""

    DISCOVERING = "discovering"
    CRAWLING = "crawling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class CrawlProgress(BaseModel):
    """Snapshot of a running crawl, persisted as ``metadata.last_progress``."""

    phase: CrawlPhase
    current: int = 0
    total: int = 0
    current_url: str | None = None
    discovered_links: list[str] = Field(default_factory=list)
    queue_length: int = 0
    avg_time_per_page: float = 0.0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, round(self.current * 100 / self.total))


class CrawlJob(BaseModel):
    """Work item consumed once by the arq worker or the direct runner."""

    source_id: UUID
    agent_id: UUID
    project_id: UUID
    url: str
    crawl_subpages: bool = True
    max_pages: int = 10
    full_page_content: bool = False
    generation: int = 0


# ── Requests ──


class WebsiteSourceCreate(BaseModel):
    """Request body for adding a website source."""

    url: str = Field(..., min_length=1, max_length=2048)
    crawl_subpages: bool = True
    max_pages: int | None = None
    full_page_content: bool = False

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        return v.strip()


class TextSourceCreate(BaseModel):
    """Request body for a free-text snippet."""

    name: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)


class QASourceCreate(BaseModel):
    """Request body for a question/answer pair."""

    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)


class SourceIdsRequest(BaseModel):
    """Body carrying a list of source ids (delete / restore / purge)."""

    source_ids: list[UUID] = Field(..., min_length=1)


# ── Responses ──


class SourceRead(BaseModel):
    """Schema for reading a source."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: UUID
    project_id: UUID
    type: SourceType
    name: str
    website_url: str | None = None
    status: SourceStatus
    error_message: str | None = None
    size_kb: int = 0
    chunk_count: int = 0
    is_trained: bool = False
    source_metadata: dict | None = None
    created_at: datetime
    updated_at: datetime


class SourceCreateResponse(BaseModel):
    """Response after a website source is accepted."""

    source: SourceRead
    job_id: str | None = None
    message: str


class SourceBulkResponse(BaseModel):
    """Outcome of a bulk delete / restore / purge."""

    affected: int
    soft_deleted: int = 0
    hard_deleted: int = 0


class EmbeddingStatus(BaseModel):
    """Embedded vs total chunks for an agent."""

    agent_id: UUID
    total_chunks: int
    embedded_chunks: int
    pending_chunks: int
