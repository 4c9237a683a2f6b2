"""FastAPI dependencies.

Long-lived services are built once in the application lifespan and stored on
``app.state``; these getters hand them to route handlers so tests can swap
in fakes via ``app.dependency_overrides``.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.browser_pool import BrowserPool
from app.core.events import EventBus
from app.database import get_db
from app.models import Agent
from app.services.ingestion import IngestionPipeline
from app.services.job_queue import DirectRunner, JobQueue
from app.services.retrieval import RetrievalService
from app.services.source_store import SourceStore


def get_store(request: Request) -> SourceStore:
    return request.app.state.store


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


def get_runner(request: Request) -> DirectRunner:
    return request.app.state.runner


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_browser_pool(request: Request) -> BrowserPool:
    return request.app.state.browser_pool


def get_retrieval(request: Request) -> RetrievalService:
    return request.app.state.retrieval


async def get_agent(
    agent_id: UUID,
    store: Annotated[SourceStore, Depends(get_store)],
) -> Agent:
    """Resolve the agent from the path or 404."""
    agent = await store.get_agent(agent_id)
    if not agent:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Agent not found",
        )
    return agent


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Store = Annotated[SourceStore, Depends(get_store)]
Pipeline = Annotated[IngestionPipeline, Depends(get_pipeline)]
Queue = Annotated[JobQueue, Depends(get_job_queue)]
Runner = Annotated[DirectRunner, Depends(get_runner)]
Bus = Annotated[EventBus, Depends(get_event_bus)]
Pool = Annotated[BrowserPool, Depends(get_browser_pool)]
Retrieval = Annotated[RetrievalService, Depends(get_retrieval)]
CurrentAgent = Annotated[Agent, Depends(get_agent)]
