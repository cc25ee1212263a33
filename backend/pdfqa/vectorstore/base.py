"""
Vector Index — Abstract Base

Every concrete backend (Weaviate, in-memory) implements this interface. The
indexing pipeline and the query engine only speak this protocol, so backends
are swappable without touching either of them.

Collection contract (enforced by ALL implementations):
  - Every upsert/search/delete names the collection it operates on; the
    collection comes from Document.vector_collection, never from user input.
  - Payload carries document_id, chunk_index, chunk_text and
    document_collection; search filters on document_id to scope a query to
    one document.
  - search() returns hits ordered by (-score, chunk_index): cosine
    similarity, higher is closer, equal scores lower chunk index first. A
    tie at the k-th position is never cut arbitrarily: every hit scoring the
    same as the k-th is returned, so a result may hold more than k hits.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# Payload keys shared by every backend
PAYLOAD_DOCUMENT_ID         = "document_id"
PAYLOAD_CHUNK_INDEX         = "chunk_index"
PAYLOAD_CHUNK_TEXT          = "chunk_text"
PAYLOAD_DOCUMENT_COLLECTION = "document_collection"


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class SearchHit:
    """One result returned from a similarity search."""
    id:      str
    score:   float          # cosine similarity
    payload: dict = field(default_factory=dict)

    @property
    def chunk_index(self) -> int:
        return int(self.payload.get(PAYLOAD_CHUNK_INDEX, 0))

    @property
    def text(self) -> str:
        return self.payload.get(PAYLOAD_CHUNK_TEXT, "")


def order_and_cut(hits: list[SearchHit], k: int) -> list[SearchHit]:
    """
    Sort by (-score, chunk_index) and keep the first `k` hits plus any hit
    tied with the k-th, whatever order the backend produced them in.
    """
    ordered = sorted(hits, key=lambda h: (-h.score, h.chunk_index))
    if k <= 0:
        return []
    if len(ordered) <= k:
        return ordered
    boundary = ordered[k - 1].score
    cut = k
    while cut < len(ordered) and ordered[cut].score == boundary:
        cut += 1
    return ordered[:cut]


def build_payload(
    *,
    document_id:         str,
    chunk_index:         int,
    chunk_text:          str,
    document_collection: str,
) -> dict:
    return {
        PAYLOAD_DOCUMENT_ID:         document_id,
        PAYLOAD_CHUNK_INDEX:         chunk_index,
        PAYLOAD_CHUNK_TEXT:          chunk_text,
        PAYLOAD_DOCUMENT_COLLECTION: document_collection,
    }


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndex(ABC):
    """Collection-scoped nearest-neighbour index."""

    @abstractmethod
    async def upsert(self, collection: str, id: str, vector: list[float], payload: dict) -> None:
        """Insert or overwrite one vector. Re-upserting an id never duplicates it."""

    @abstractmethod
    async def search(
        self,
        collection: str,
        vector:     list[float],
        k:          int,
        filter:     dict | None = None,
    ) -> list[SearchHit]:
        """
        The `k` nearest neighbours in `collection` (plus any tied with the
        k-th), ordered by (-score, chunk_index).
        `filter` is an equality match on payload fields, e.g. {"document_id": "..."}.
        """

    @abstractmethod
    async def delete(self, collection: str, id: str) -> None:
        """Delete one vector. Deleting an unknown id is not an error."""

    @abstractmethod
    async def delete_where(self, collection: str, filter: dict) -> int:
        """Delete every vector whose payload matches `filter`; returns the number removed."""
