"""
Component wiring

Builds the long-lived components once per process from Settings. The API
(lifespan in pdfqa.main) and the Celery worker (workers/tasks.py) both go
through here, so ingestion and query always share one embedding model
configuration.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pdfqa.auth.access import AccessResolver
from pdfqa.core.config import IndexingConfig, QueryConfig, Settings
from pdfqa.llm.gateway import LLMClient, LLMGateway
from pdfqa.processing.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from pdfqa.rag.engine import QueryEngine
from pdfqa.services.documents import DocumentService, TaskPublisher
from pdfqa.services.indexing import IndexingPipeline
from pdfqa.services.registry import DocumentRegistry
from pdfqa.storage.files import FileStore, get_file_store
from pdfqa.vectorstore.base import VectorIndex
from pdfqa.vectorstore.factory import get_vector_index


@dataclass
class Components:
    registry:     DocumentRegistry
    embedder:     EmbeddingProvider
    vector_index: VectorIndex
    file_store:   FileStore
    settings:     Settings

    def indexing_pipeline(self) -> IndexingPipeline:
        return IndexingPipeline(
            self.registry,
            self.embedder,
            self.vector_index,
            config=IndexingConfig.from_settings(self.settings),
        )

    def document_service(
        self,
        *,
        llm:       LLMClient | None = None,
        publisher: TaskPublisher | None = None,
    ) -> DocumentService:
        engine = QueryEngine(
            self.registry,
            self.embedder,
            self.vector_index,
            llm or LLMGateway.from_settings(self.settings),
            config=QueryConfig.from_settings(self.settings),
        )
        return DocumentService(
            registry=self.registry,
            access=AccessResolver(self.registry),
            engine=engine,
            file_store=self.file_store,
            publisher=publisher or TaskPublisher(),
        )


def build_components(
    settings:        Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> Components:
    return Components(
        registry=DocumentRegistry(
            session_factory,
            default_collection=settings.default_vector_collection,
        ),
        embedder=OpenAIEmbeddingProvider.from_settings(settings),
        vector_index=get_vector_index(settings),
        file_store=get_file_store(settings),
        settings=settings,
    )
