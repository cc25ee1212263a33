"""
Vector Index Factory

Selects the backend (Weaviate | in-memory) from config. The rest of the app
only calls get_vector_index(); it never touches the concrete classes.
"""

from __future__ import annotations

from pdfqa.core.config import Settings
from pdfqa.vectorstore.base import VectorIndex


def get_vector_index(settings: Settings) -> VectorIndex:
    """
    Build the configured VectorIndex. Call once per process and share the
    instance; the Weaviate client holds a connection pool.
    """
    backend = settings.vector_store_backend.lower()

    if backend == "weaviate":
        from pdfqa.vectorstore.weaviate_store import WeaviateVectorIndex, create_weaviate_client
        return WeaviateVectorIndex(create_weaviate_client(settings))

    if backend == "memory":
        from pdfqa.vectorstore.memory_store import InMemoryVectorIndex
        return InMemoryVectorIndex()

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'weaviate', 'memory'"
    )
