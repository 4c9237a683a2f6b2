"""Postgres Full-Text Search keyword retriever (degraded path when embeddings are down)."""

import logging
import re
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.retrieval import RetrievedChunk

logger = logging.getLogger(__name__)

_ALLOWED_CONFIGS = {"simple", "english", "french", "german", "spanish", "pg_catalog.simple"}


def _build_or_tsquery(query: str) -> str:
    """Build an OR-based tsquery from user query words.

    Using OR instead of AND so that chunks matching any query term
    are returned, with ranking favoring chunks matching more terms.
    """
    words = re.findall(r"\w+", query.lower())
    return " | ".join(dict.fromkeys(words))


async def keyword_search(
    db: AsyncSession,
    agent_id: UUID,
    source_types: list[str] | None,
    query: str,
    topk: int,
    fts_config: str = "simple",
) -> list[RetrievedChunk]:
    """Search an agent's chunks using Postgres full-text search.

    Uses OR-based tsquery + ts_rank_cd for ranking. Chunks of removed
    sources are excluded.
    """
    if not query.strip():
        return []

    # Must be a known PG text search config; it is interpolated as a literal
    if fts_config not in _ALLOWED_CONFIGS:
        fts_config = "simple"

    or_tsquery = _build_or_tsquery(query)
    if not or_tsquery:
        return []

    params: dict = {
        "agent_id": str(agent_id),
        "tsquery": or_tsquery,
        "topk": topk,
    }
    type_filter = ""
    if source_types:
        type_filter = "AND s.type = ANY(:source_types)"
        params["source_types"] = list(source_types)

    sql = text(f"""
        SELECT
            CAST(c.id AS text) AS chunk_id,
            CAST(c.source_id AS text) AS source_id,
            s.name AS source_name,
            s.type AS source_type,
            c.content,
            c.position,
            c.metadata ->> 'page_url' AS page_url,
            c.metadata ->> 'page_title' AS page_title,
            ts_rank_cd(c.content_tsv, to_tsquery('{fts_config}', :tsquery)) AS rank
        FROM source_chunks c
        JOIN sources s ON s.id = c.source_id
        WHERE c.agent_id = CAST(:agent_id AS uuid)
          AND s.status <> 'removed'
          {type_filter}
          AND c.content_tsv @@ to_tsquery('{fts_config}', :tsquery)
        ORDER BY rank DESC, c.created_at, c.position
        LIMIT :topk
    """)

    result = await db.execute(sql, params)
    rows = result.fetchall()

    chunks = [
        RetrievedChunk(
            chunk_id=row.chunk_id,
            source_id=row.source_id,
            source_name=row.source_name,
            source_type=row.source_type,
            content=row.content,
            score=float(row.rank),
            page_url=row.page_url,
            page_title=row.page_title,
            position=row.position,
        )
        for row in rows
    ]

    logger.debug("Keyword search returned %d results for query: %s", len(chunks), query[:80])
    return chunks
