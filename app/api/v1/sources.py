"""Knowledge-base source endpoints (websites, text, Q&A)."""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.config import get_settings
from app.core.urls import clamp_max_pages, validate_seed_url
from app.deps import CurrentAgent, Pipeline, Queue, Runner, Store
from app.models import SourceStatus, SourceType
from app.schemas.source import (
    CrawlJob,
    QASourceCreate,
    SourceBulkResponse,
    SourceCreateResponse,
    SourceIdsRequest,
    SourceRead,
    TextSourceCreate,
    WebsiteSourceCreate,
)
from app.services.job_queue import start_website_crawl

settings = get_settings()
logger = logging.getLogger(__name__)

router = APIRouter()


def _dispatch_message(job_id: str | None) -> str:
    if job_id:
        return "Website queued for crawling"
    return "Job queue unavailable, crawling directly"


@router.post(
    "/{agent_id}/sources/website",
    response_model=SourceCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_website_source(
    agent_id: UUID,
    data: WebsiteSourceCreate,
    agent: CurrentAgent,
    store: Store,
    queue: Queue,
    runner: Runner,
) -> SourceCreateResponse:
    """Add a website source and start crawling it."""
    url = validate_seed_url(data.url)
    max_pages = clamp_max_pages(
        data.max_pages,
        default=settings.crawl_default_max_pages,
        limit=settings.crawl_max_pages_limit,
    )

    source = await store.create_source(
        agent_id=agent.id,
        project_id=agent.project_id,
        type=SourceType.WEBSITE.value,
        name=url,
        website_url=url,
        status=SourceStatus.PENDING.value,
        source_metadata={
            "url": url,
            "crawl_subpages": data.crawl_subpages,
            "max_pages": max_pages,
            "full_page_content": data.full_page_content,
        },
    )

    job = CrawlJob(
        source_id=source.id,
        agent_id=agent.id,
        project_id=agent.project_id,
        url=url,
        crawl_subpages=data.crawl_subpages,
        max_pages=max_pages,
        full_page_content=data.full_page_content,
        generation=source.crawl_generation,
    )
    job_id = await start_website_crawl(job, queue, runner, store)

    source = await store.get_source(source.id) or source
    return SourceCreateResponse(
        source=SourceRead.model_validate(source),
        job_id=job_id,
        message=_dispatch_message(job_id),
    )


@router.get("/{agent_id}/sources", response_model=list[SourceRead])
async def list_sources(
    agent_id: UUID,
    agent: CurrentAgent,
    store: Store,
    type: SourceType | None = None,
) -> list:
    """List an agent's sources (removed ones excluded)."""
    return await store.list_sources(agent.id, type.value if type else None)


@router.get("/{agent_id}/sources/stats")
async def source_stats(
    agent_id: UUID,
    agent: CurrentAgent,
    store: Store,
) -> dict:
    """Source count and size per type, plus totals."""
    return await store.source_stats(agent.id)


@router.get("/{agent_id}/sources/{source_id}", response_model=SourceRead)
async def get_source(
    agent_id: UUID,
    source_id: UUID,
    agent: CurrentAgent,
    store: Store,
):
    """Get one source; ``metadata.last_progress`` holds the crawl progress snapshot."""
    source = await store.get_source(source_id)
    if not source or source.agent_id != agent.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Source not found",
        )
    return source


@router.post(
    "/{agent_id}/sources/website/{source_id}/recrawl",
    response_model=SourceCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def recrawl_website_source(
    agent_id: UUID,
    source_id: UUID,
    agent: CurrentAgent,
    store: Store,
    pipeline: Pipeline,
    queue: Queue,
    runner: Runner,
) -> SourceCreateResponse:
    """Drop a website's chunks and crawl it again with its stored settings."""
    source = await store.get_source(source_id)
    if not source or source.agent_id != agent.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Source not found",
        )
    if source.type != SourceType.WEBSITE.value or not source.website_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only website sources can be re-crawled",
        )
    if source.status == SourceStatus.REMOVED.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Source is removed; restore it first",
        )

    previous = source.source_metadata or {}
    crawl_settings = {
        "url": source.website_url,
        "crawl_subpages": previous.get("crawl_subpages", True),
        "max_pages": clamp_max_pages(
            previous.get("max_pages"),
            default=settings.crawl_default_max_pages,
            limit=settings.crawl_max_pages_limit,
        ),
        "full_page_content": previous.get("full_page_content", False),
    }
    generation = await store.begin_recrawl(source.id, crawl_settings)
    if generation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Source not found",
        )
    await pipeline.drop_vectors(source.id)

    job = CrawlJob(
        source_id=source.id,
        agent_id=agent.id,
        project_id=source.project_id,
        generation=generation,
        **crawl_settings,
    )
    job_id = await start_website_crawl(job, queue, runner, store)
    logger.info("Re-crawl of source %s dispatched (generation %d)", source.id, generation)

    source = await store.get_source(source.id) or source
    return SourceCreateResponse(
        source=SourceRead.model_validate(source),
        job_id=job_id,
        message=_dispatch_message(job_id),
    )


@router.post(
    "/{agent_id}/sources/text",
    response_model=SourceRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_text_source(
    agent_id: UUID,
    data: TextSourceCreate,
    agent: CurrentAgent,
    pipeline: Pipeline,
):
    """Add a free-text snippet, chunked and embedded in-request."""
    return await pipeline.ingest_text(agent.id, agent.project_id, data.name, data.content)


@router.post(
    "/{agent_id}/sources/qa",
    response_model=SourceRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_qa_source(
    agent_id: UUID,
    data: QASourceCreate,
    agent: CurrentAgent,
    pipeline: Pipeline,
):
    """Add a question/answer pair."""
    return await pipeline.ingest_qa(agent.id, agent.project_id, data.question, data.answer)


@router.delete("/{agent_id}/sources", response_model=SourceBulkResponse)
async def delete_sources(
    agent_id: UUID,
    data: SourceIdsRequest,
    agent: CurrentAgent,
    pipeline: Pipeline,
) -> SourceBulkResponse:
    """Delete sources: trained ones are soft-deleted, untrained ones are removed for good."""
    counts = await pipeline.delete_sources(agent.id, data.source_ids)
    return SourceBulkResponse(
        affected=counts["soft"] + counts["hard"],
        soft_deleted=counts["soft"],
        hard_deleted=counts["hard"],
    )


@router.post("/{agent_id}/sources/restore", response_model=SourceBulkResponse)
async def restore_sources(
    agent_id: UUID,
    data: SourceIdsRequest,
    agent: CurrentAgent,
    pipeline: Pipeline,
) -> SourceBulkResponse:
    """Restore soft-deleted sources."""
    restored = await pipeline.restore_sources(agent.id, data.source_ids)
    return SourceBulkResponse(affected=len(restored))


@router.delete("/{agent_id}/sources/permanent", response_model=SourceBulkResponse)
async def purge_sources(
    agent_id: UUID,
    data: SourceIdsRequest,
    agent: CurrentAgent,
    pipeline: Pipeline,
) -> SourceBulkResponse:
    """Permanently delete soft-deleted sources."""
    purged = await pipeline.purge_sources(agent.id, data.source_ids)
    return SourceBulkResponse(affected=len(purged), hard_deleted=len(purged))
