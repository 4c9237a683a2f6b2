"""Embedding service supporting OpenAI and Mistral providers."""

import hashlib
import logging
from typing import Sequence

from openai import AsyncOpenAI, OpenAIError

from app.config import get_settings
from app.core.errors import EmbeddingUnavailableError

settings = get_settings()
logger = logging.getLogger(__name__)

# Mistral's API is OpenAI-compatible, just different base URL
_PROVIDER_CONFIG = {
    "openai": {
        "base_url": None,  # default OpenAI
        "api_key": settings.openai_api_key,
        "supports_dimensions": True,
    },
    "mistral": {
        "base_url": "https://api.mistral.ai/v1",
        "api_key": settings.mistral_api_key,
        "supports_dimensions": False,
    },
}


class EmbeddingService:
    """Service for generating embeddings (OpenAI or Mistral).

    Any provider or transport failure surfaces as EmbeddingUnavailableError so
    callers can keep chunks without vectors and backfill later.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        provider: str = settings.embedding_provider,
        model: str = settings.embedding_model,
        dimensions: int = settings.embedding_dimensions,
        batch_size: int = settings.embedding_batch_size,
    ) -> None:
        config = _PROVIDER_CONFIG.get(provider, _PROVIDER_CONFIG["openai"])

        # Without a key the client cannot be built; embed calls then fail cleanly
        self._config_error: str | None = None
        if client is None and not config["api_key"]:
            self._config_error = f"No API key configured for embedding provider '{provider}'"
        self.client = client
        if client is None and self._config_error is None:
            self.client = AsyncOpenAI(
                api_key=config["api_key"],
                base_url=config["base_url"],
            )
        self.provider = provider
        self.model = model
        self.dimensions = dimensions
        self.batch_size = max(1, batch_size)
        self._supports_dimensions = config["supports_dimensions"]
        self._cache: dict[str, list[float]] = {}

    def _cache_key(self, text: str) -> str:
        """Generate cache key for text."""
        text_hash = hashlib.sha256(text.encode()).hexdigest()
        return f"{self.model}:{text_hash}"

    def _embed_kwargs(self, input_data: str | list[str]) -> dict:
        """Build kwargs for embeddings.create(), conditionally including dimensions."""
        kwargs: dict = {"input": input_data, "model": self.model}
        if self._supports_dimensions and self.dimensions:
            kwargs["dimensions"] = self.dimensions
        return kwargs

    async def _create(self, input_data: str | list[str]):
        if self.client is None:
            raise EmbeddingUnavailableError(self._config_error or "Embedding client not configured")
        try:
            return await self.client.embeddings.create(**self._embed_kwargs(input_data))
        except OpenAIError as e:
            logger.warning("Embedding request to %s failed: %s", self.provider, e)
            raise EmbeddingUnavailableError(f"Embedding backend error: {e}") from e

    async def embed_texts(
        self,
        texts: Sequence[str],
        batch_size: int | None = None,
    ) -> tuple[list[list[float]], int]:
        """Embed ``texts`` in order. Returns (embeddings, total_tokens_used).

        Cached texts are served locally; only the misses are sent, in
        requests of at most ``batch_size`` inputs.

        Raises:
            EmbeddingUnavailableError: Backend unreachable or rejected the request.
        """
        batch_size = batch_size or self.batch_size
        keys = [self._cache_key(text) for text in texts]

        # Unique misses, first occurrence wins
        pending: dict[str, str] = {}
        for key, text in zip(keys, texts):
            if key not in self._cache and key not in pending:
                pending[key] = text

        total_tokens = 0
        misses = list(pending.items())
        for start in range(0, len(misses), batch_size):
            batch = misses[start:start + batch_size]
            response = await self._create([text for _, text in batch])
            if response.usage is not None:
                total_tokens += response.usage.total_tokens
            for (key, _), item in zip(batch, response.data):
                self._cache[key] = item.embedding

        return [self._cache[key] for key in keys], total_tokens

    async def embed_query(self, query: str) -> list[float]:
        """Generate embedding for a search query."""
        cache_key = self._cache_key(query)
        if cache_key in self._cache:
            return self._cache[cache_key]
        response = await self._create(query)
        embedding = response.data[0].embedding
        self._cache[cache_key] = embedding
        return embedding


# Singleton instance
embedding_service = EmbeddingService()
