"""
Weaviate Vector Index — Collection per Document Collection

Isolation model:
  Weaviate organises data into "collections" (classes). Each distinct
  Document.vector_collection maps to one Weaviate collection; documents
  sharing a collection are separated by the document_id property filter.

  Collections are created lazily on first upsert with our own vectors
  (vectorizer none) and an HNSW cosine index.

The v4 client is synchronous; every call runs in a worker thread so the
event loop never blocks on the network. Timeouts and retries are applied by
the caller (core.retry.call_with_retry).
"""

from __future__ import annotations

import asyncio
import logging
import re

import weaviate
import weaviate.classes as wvc
from weaviate.classes.config import Configure, DataType, Property
from weaviate.classes.query import Filter, MetadataQuery

from pdfqa.core.config import Settings
from pdfqa.vectorstore.base import (
    PAYLOAD_CHUNK_INDEX,
    PAYLOAD_CHUNK_TEXT,
    PAYLOAD_DOCUMENT_COLLECTION,
    PAYLOAD_DOCUMENT_ID,
    SearchHit,
    VectorIndex,
    order_and_cut,
)

logger = logging.getLogger(__name__)

# Upper bound for the tie-widening loop in _search_sync
_MAX_SEARCH_LIMIT = 10_000

_RETURN_PROPERTIES = [
    PAYLOAD_DOCUMENT_ID,
    PAYLOAD_CHUNK_INDEX,
    PAYLOAD_CHUNK_TEXT,
    PAYLOAD_DOCUMENT_COLLECTION,
]


def collection_name(name: str) -> str:
    """
    Weaviate collection names must start with an uppercase letter and
    contain only [A-Za-z0-9_].
    Example: "rag-text-embedding" → "Rag_text_embedding"
    """
    safe = re.sub(r"[^A-Za-z0-9_]", "_", name.strip()) or "Documents"
    if not safe[0].isalpha():
        safe = f"C_{safe}"
    return safe[0].upper() + safe[1:]


class WeaviateVectorIndex(VectorIndex):
    """
    Weaviate-backed VectorIndex.

    The client is created once at startup and shared; this class only keeps
    a cache of collections already known to exist.
    """

    def __init__(self, client: weaviate.WeaviateClient) -> None:
        self._client = client
        self._known: set[str] = set()

    # ------------------------------------------------------------------
    # Collection provisioning (idempotent)
    # ------------------------------------------------------------------

    def _ensure_collection(self, collection: str):
        name = collection_name(collection)
        if name not in self._known:
            if not self._client.collections.exists(name):
                self._client.collections.create(
                    name=name,
                    description=f"PDF chunk vectors for collection {collection}",
                    vectorizer_config=Configure.Vectorizer.none(),   # we supply our own vectors
                    vector_index_config=Configure.VectorIndex.hnsw(
                        distance_metric=wvc.config.VectorDistances.COSINE,
                        ef_construction=128,
                        max_connections=64,
                    ),
                    properties=[
                        Property(name=PAYLOAD_DOCUMENT_ID,         data_type=DataType.TEXT, index_filterable=True),
                        Property(name=PAYLOAD_CHUNK_INDEX,         data_type=DataType.INT,  index_filterable=True),
                        Property(name=PAYLOAD_CHUNK_TEXT,          data_type=DataType.TEXT, index_searchable=True),
                        Property(name=PAYLOAD_DOCUMENT_COLLECTION, data_type=DataType.TEXT, index_filterable=True),
                    ],
                )
                logger.info("Weaviate collection created: %s", name)
            self._known.add(name)
        return self._client.collections.get(name)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, collection: str, id: str, vector: list[float], payload: dict) -> None:
        await asyncio.to_thread(self._upsert_sync, collection, id, vector, payload)

    def _upsert_sync(self, collection: str, id: str, vector: list[float], payload: dict) -> None:
        handle = self._ensure_collection(collection)
        # Batch insert overwrites an existing object with the same uuid
        result = handle.data.insert_many([
            wvc.data.DataObject(
                uuid=id,
                properties={key: payload.get(key) for key in _RETURN_PROPERTIES},
                vector=vector,
            )
        ])
        if result.has_errors:
            errors = "; ".join(str(err.message) for err in result.errors.values())
            raise RuntimeError(f"Weaviate upsert rejected object {id}: {errors}")
        logger.debug("Weaviate upsert | collection=%s id=%s", collection, id)

    async def search(
        self,
        collection: str,
        vector:     list[float],
        k:          int,
        filter:     dict | None = None,
    ) -> list[SearchHit]:
        return await asyncio.to_thread(self._search_sync, collection, vector, k, filter)

    def _search_sync(
        self,
        collection: str,
        vector:     list[float],
        k:          int,
        filter:     dict | None,
    ) -> list[SearchHit]:
        name = collection_name(collection)
        if name not in self._known and not self._client.collections.exists(name):
            return []
        handle = self._client.collections.get(name)

        filters = self._build_filter(filter) if filter else None
        if k <= 0:
            return []

        # HNSW returns ties in arbitrary order, so widen the limit until the
        # last returned hit scores strictly below the k-th one.
        limit = k + 1
        while True:
            response = handle.query.near_vector(
                near_vector=vector,
                limit=limit,
                return_metadata=MetadataQuery(distance=True),
                return_properties=_RETURN_PROPERTIES,
                filters=filters,
            )
            hits = [
                # cosine distance → similarity
                SearchHit(id=str(obj.uuid), score=1.0 - (obj.metadata.distance or 0.0), payload=dict(obj.properties))
                for obj in response.objects
            ]
            exhausted = len(hits) < limit
            if exhausted or limit >= _MAX_SEARCH_LIMIT or hits[-1].score < hits[k - 1].score:
                break
            limit = min(limit * 2, _MAX_SEARCH_LIMIT)

        ranked = order_and_cut(hits, k)
        logger.debug(
            "Weaviate search | collection=%s k=%d fetched=%d results=%d",
            collection, k, len(hits), len(ranked),
        )
        return ranked

    @staticmethod
    def _build_filter(filter_dict: dict):
        """Convert a simple {field: value} dict to a Weaviate Filter object."""
        clauses = [Filter.by_property(k).equal(v) for k, v in filter_dict.items()]
        if len(clauses) == 1:
            return clauses[0]
        return Filter.all_of(clauses)

    async def delete(self, collection: str, id: str) -> None:
        await asyncio.to_thread(self._delete_sync, collection, id)

    def _delete_sync(self, collection: str, id: str) -> None:
        name = collection_name(collection)
        if not self._client.collections.exists(name):
            return
        self._client.collections.get(name).data.delete_by_id(id)
        logger.debug("Weaviate delete | collection=%s id=%s", collection, id)

    async def delete_where(self, collection: str, filter: dict) -> int:
        return await asyncio.to_thread(self._delete_where_sync, collection, filter)

    def _delete_where_sync(self, collection: str, filter: dict) -> int:
        name = collection_name(collection)
        if not self._client.collections.exists(name):
            return 0
        result = self._client.collections.get(name).data.delete_many(where=self._build_filter(filter))
        logger.debug(
            "Weaviate delete_many | collection=%s filter=%s matched=%d", collection, filter, result.matches,
        )
        return result.successful


# ---------------------------------------------------------------------------
# Client factory: call once at startup and share
# ---------------------------------------------------------------------------

def create_weaviate_client(settings: Settings) -> weaviate.WeaviateClient:
    """
    Create and return a connected Weaviate client.
    Supports both local (Docker) and Weaviate Cloud modes.
    """
    if settings.weaviate_api_key:
        return weaviate.connect_to_weaviate_cloud(
            cluster_url=settings.weaviate_url,
            auth_credentials=weaviate.auth.AuthApiKey(settings.weaviate_api_key),
        )
    return weaviate.connect_to_local(
        host=settings.weaviate_host,
        port=settings.weaviate_port,
    )
