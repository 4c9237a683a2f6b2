"""SQLAlchemy models package."""

from app.models.agent import Agent
from app.models.source import Source, SourceStatus, SourceType
from app.models.chunk import Chunk

__all__ = [
    "Agent",
    "Source",
    "SourceStatus",
    "SourceType",
    "Chunk",
]
