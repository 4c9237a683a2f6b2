"""Application configuration using pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "postgresql+asyncpg://kb:kb@localhost:5432/kb"

    # Redis (job queue + event bus)
    redis_url: str = "redis://localhost:6379"

    # Qdrant
    qdrant_url: str = "http://localhost:6333"
    qdrant_collection: str = "kb_chunks"

    # OpenAI / Mistral
    openai_api_key: str = ""
    mistral_api_key: str = ""

    # Embeddings
    embedding_provider: str = "openai"  # openai | mistral
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 20

    # Chunking presets (characters)
    chunk_size: int = 8000
    chunk_overlap: int = 400
    website_chunk_size: int = 16000
    website_chunk_overlap: int = 1600
    text_chunk_size: int = 2000
    text_chunk_overlap: int = 200
    max_chunks_per_source: int = 1000

    # Crawler
    crawl_timeout_seconds: float = 300.0  # wall-clock ceiling per crawl
    crawl_page_timeout_seconds: float = 30.0
    crawl_concurrency: int = 3
    crawl_default_max_pages: int = 10
    crawl_max_pages_limit: int = 1000
    crawl_slow_page_seconds: float = 15.0
    crawl_allow_subdomains: bool = False
    crawl_max_content_chars: int = 50_000

    # Browser pool
    browser_max_browsers: int = 3
    browser_max_contexts_per_browser: int = 5
    browser_max_uses_per_context: int = 25
    browser_idle_timeout_seconds: float = 300.0
    browser_acquire_timeout_seconds: float = 60.0
    browser_launch_args: list[str] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--disable-blink-features=AutomationControlled",
        "--no-first-run",
        "--disable-extensions",
    ]
    browser_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    )

    # Event bus
    event_bus_backend: str = "redis"  # redis | memory
    event_channel_prefix: str = "kb:events:"
    sse_keepalive_seconds: float = 30.0

    # Search
    search_default_max_chunks: int = 5
    search_default_threshold: float = 0.7
    postgres_fts_config: str = "simple"

    # Worker
    worker_max_jobs: int = 2
    worker_job_timeout: int = 600  # 10 minutes max per job
    worker_keep_result: int = 3600
    worker_max_tries: int = 3
    worker_retry_defer_seconds: int = 30
    orphan_grace_seconds: float = 600.0  # untouched this long with no live job = orphaned

    # App
    debug: bool = False
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
