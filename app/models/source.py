"""Source model: one knowledge-base unit attached to an agent."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.agent import Agent
    from app.models.chunk import Chunk


class SourceType(str, Enum):
    """Kind of knowledge-base unit."""

    WEBSITE = "website"
    FILE = "file"
    TEXT = "text"
    QA = "qa"


class SourceStatus(str, Enum):
    """Source processing status."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    CHUNKING = "chunking"
    READY = "ready"
    ERROR = "error"
    REMOVED = "removed"


# Forward order of the processing lifecycle; ready/error are both terminal.
_STATUS_RANK = {
    SourceStatus.PENDING: 0,
    SourceStatus.QUEUED: 1,
    SourceStatus.PROCESSING: 2,
    SourceStatus.CHUNKING: 3,
    SourceStatus.READY: 4,
    SourceStatus.ERROR: 4,
}

TERMINAL_STATUSES = frozenset({SourceStatus.READY, SourceStatus.ERROR})


def is_forward_transition(current: str, new: str) -> bool:
    """Return True if moving from ``current`` to ``new`` keeps the lifecycle monotonic.

    Resetting to ``pending`` (retry / re-crawl) and soft removal are always
    allowed. A terminal status never moves to another processing status.
    """
    current_status = SourceStatus(current)
    new_status = SourceStatus(new)
    if new_status in (SourceStatus.PENDING, SourceStatus.REMOVED):
        return True
    if current_status == SourceStatus.REMOVED:
        return False
    if current_status in TERMINAL_STATUSES:
        return False
    return _STATUS_RANK[new_status] >= _STATUS_RANK[current_status]


class Source(Base):
    """A website, file, text snippet or Q&A pair feeding an agent's knowledge base."""

    __tablename__ = "sources"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    agent_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(2048), nullable=False)
    website_url: Mapped[str | None] = mapped_column(String(2048))

    status: Mapped[str] = mapped_column(
        String(20),
        default=SourceStatus.PENDING.value,
        server_default=SourceStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text)

    size_kb: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    chunk_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    is_trained: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default="false",
        nullable=False,
    )

    # Bumped on every crawl request; writers from older generations are discarded
    crawl_generation: Mapped[int] = mapped_column(
        Integer,
        default=0,
        server_default="0",
        nullable=False,
    )

    source_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    agent: Mapped["Agent"] = relationship("Agent", back_populates="sources")
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
