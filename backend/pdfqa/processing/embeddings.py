"""
Embedding Provider
══════════════════

One provider instance serves BOTH ingestion and query embedding. Chunks and
questions must land in the same vector space, so the model id is stamped on
the document when a run claims it and the query engine refuses to search a
document embedded with a different model.

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims, ~$0.00002/1K tokens  (default)
  text-embedding-3-large  → 3072 dims, ~$0.00013/1K tokens  (higher accuracy)

Retries and timeouts are NOT handled here: the SDK's own retry loop is
disabled (max_retries=0) and every call site wraps embed() in
core.retry.call_with_retry, so there is exactly one retry budget per call.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

from langchain_openai import OpenAIEmbeddings

from pdfqa.core.config import Settings

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Converts text into a fixed-length vector."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier of the embedding model/version, e.g. 'text-embedding-3-small@1536'."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    langchain-openai backed provider.

    Usage:
        provider = OpenAIEmbeddingProvider.from_settings(get_settings())
        vector   = await provider.embed("What is the refund policy?")
    """

    def __init__(
        self,
        *,
        model:      str,
        api_key:    str,
        dimensions: int | None = None,
    ) -> None:
        self._model      = model
        self._dimensions = dimensions
        self._client = OpenAIEmbeddings(
            model=model,
            api_key=api_key,
            dimensions=dimensions,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIEmbeddingProvider":
        return cls(
            model=settings.embedding_model,
            api_key=settings.openai_api_key,
            dimensions=settings.embedding_dimensions,
        )

    @property
    def model_id(self) -> str:
        if self._dimensions:
            return f"{self._model}@{self._dimensions}"
        return self._model

    async def embed(self, text: str) -> list[float]:
        t0 = time.monotonic()
        vector = await self._client.aembed_query(text)
        logger.debug(
            "OpenAI embeddings | model=%s chars=%d dims=%d api_ms=%.0f",
            self._model, len(text), len(vector), (time.monotonic() - t0) * 1000,
        )
        return vector
