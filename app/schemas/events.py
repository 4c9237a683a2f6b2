"""Progress events published on the event bus.

Events form a tagged union on ``type`` (``crawl:*``, ``chunk:*``, ``embed:*``,
``source:updated``). JSON uses camelCase keys (``sourceId``, ``currentUrl``).
"""

import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from app.schemas.source import CrawlPhase, CrawlProgress

EVENT_CATEGORIES = ("crawl", "chunk", "embed", "source")


class _EventBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_id: str
    project_id: str
    job_id: str | None = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def category(self) -> str:
        return self.type.split(":", 1)[0]  # type: ignore[attr-defined]


class CrawlEvent(_EventBase):
    type: Literal["crawl:started", "crawl:progress", "crawl:completed", "crawl:failed"]
    phase: CrawlPhase
    current: int = 0
    total: int = 0
    current_url: str | None = None
    discovered_links: list[str] = Field(default_factory=list)
    discovered_count: int = 0
    queue_length: int = 0
    avg_time_per_page: float = 0.0
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None

    @classmethod
    def from_progress(
        cls,
        event_type: str,
        source_id: Any,
        project_id: Any,
        progress: CrawlProgress,
        job_id: str | None = None,
        error: str | None = None,
    ) -> "CrawlEvent":
        return cls(
            type=event_type,
            source_id=str(source_id),
            project_id=str(project_id),
            job_id=job_id,
            phase=progress.phase,
            current=progress.current,
            total=progress.total,
            current_url=progress.current_url,
            discovered_links=progress.discovered_links,
            discovered_count=len(progress.discovered_links),
            queue_length=progress.queue_length,
            avg_time_per_page=progress.avg_time_per_page,
            progress=progress.percent,
            error=error,
        )


class ChunkEvent(_EventBase):
    type: Literal["chunk:started", "chunk:progress", "chunk:completed", "chunk:failed"]
    chunks_created: int = 0
    total_chunks: int | None = None
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None


class EmbedEvent(_EventBase):
    type: Literal["embed:started", "embed:progress", "embed:completed", "embed:failed"]
    chunks_embedded: int = 0
    total_chunks: int = 0
    tokens_used: int = 0
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None


class SourceEvent(_EventBase):
    type: Literal["source:updated"] = "source:updated"
    status: str
    chunk_count: int | None = None
    error_message: str | None = None


Event = Annotated[
    Union[CrawlEvent, ChunkEvent, EmbedEvent, SourceEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def parse_event(data: dict[str, Any] | str | bytes) -> Event:
    """Validate a dict or JSON document into the matching event model."""
    if isinstance(data, (str, bytes)):
        return _event_adapter.validate_json(data)
    return _event_adapter.validate_python(data)


def dump_event(event: Event) -> dict[str, Any]:
    """JSON-ready dict with camelCase keys."""
    return event.model_dump(mode="json", by_alias=True)
