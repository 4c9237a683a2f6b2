"""Ingestion error taxonomy."""


class IngestionError(Exception):
    """Base class for knowledge-base ingestion errors."""


class InvalidCrawlRequestError(IngestionError):
    """Raised when a crawl request is rejected before any state is touched."""


class PoolExhaustedError(IngestionError):
    """Raised when no browsing context can be provided.

    Covers both a full pool when the caller asked to fail fast and a browser
    that could not be launched. Callers should retry after a backoff.
    """


class CrawlTimeoutError(IngestionError):
    """Raised when a crawl exceeds its wall-clock ceiling."""

    def __init__(self, seconds: float):
        super().__init__(f"Crawl timed out after {seconds:.0f}s")
        self.seconds = seconds


class EmbeddingUnavailableError(IngestionError):
    """Raised when the embedding backend cannot be reached or fails."""


class AgentNotFoundError(IngestionError):
    """Raised when the agent owning a source does not exist."""


class SourceNotFoundError(IngestionError):
    """Raised when a source does not exist (or belongs to another agent)."""


class CrawlSupersededError(IngestionError):
    """Raised when a newer crawl request replaced the one being processed."""
