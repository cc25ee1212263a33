"""
In-Memory Vector Index

Exact cosine-similarity search over a dict of vectors per collection. Used
for local development (VECTOR_STORE_BACKEND=memory) and by the test suite.
Not shared between processes, so a Celery worker and the API each see their
own copy.
"""

from __future__ import annotations

import asyncio
import logging
import math

from pdfqa.vectorstore.base import SearchHit, VectorIndex, order_and_cut

logger = logging.getLogger(__name__)


def _cosine(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} != {len(b)}")
    dot    = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _matches(payload: dict, filter: dict | None) -> bool:
    return not filter or all(payload.get(k) == v for k, v in filter.items())


class InMemoryVectorIndex(VectorIndex):

    def __init__(self) -> None:
        # collection → id → (vector, payload)
        self._collections: dict[str, dict[str, tuple[list[float], dict]]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, collection: str, id: str, vector: list[float], payload: dict) -> None:
        async with self._lock:
            self._collections.setdefault(collection, {})[id] = (list(vector), dict(payload))

    async def search(
        self,
        collection: str,
        vector:     list[float],
        k:          int,
        filter:     dict | None = None,
    ) -> list[SearchHit]:
        async with self._lock:
            items = list(self._collections.get(collection, {}).items())

        hits = [
            SearchHit(id=vector_id, score=_cosine(vector, stored), payload=dict(payload))
            for vector_id, (stored, payload) in items
            if _matches(payload, filter)
        ]
        ranked = order_and_cut(hits, k)
        logger.debug(
            "Memory search | collection=%s candidates=%d k=%d", collection, len(hits), k,
        )
        return ranked

    async def delete(self, collection: str, id: str) -> None:
        async with self._lock:
            self._collections.get(collection, {}).pop(id, None)

    async def delete_where(self, collection: str, filter: dict) -> int:
        async with self._lock:
            stored = self._collections.get(collection, {})
            doomed = [vector_id for vector_id, (_, payload) in stored.items() if _matches(payload, filter)]
            for vector_id in doomed:
                del stored[vector_id]
        return len(doomed)

    async def count(self, collection: str, filter: dict | None = None) -> int:
        async with self._lock:
            return sum(
                1 for _, payload in self._collections.get(collection, {}).values()
                if _matches(payload, filter)
            )
