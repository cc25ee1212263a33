"""
Unit Tests — DocumentRegistry
══════════════════════════════
Runs against a real SQLite database (aiosqlite) per test.

Coverage targets:
  ✅ create        → pending, 0/0 counters, bounds validated
  ✅ get           → unknown uuid → DocumentNotFoundError
  ✅ claim         → atomic; two concurrent claims → exactly one wins
  ✅ progress      → monotonic, never above total_chunks
  ✅ completed     → only when every chunk succeeded; sets indexed_at
  ✅ failed        → partial successful_chunks preserved
  ✅ re-index      → completed|failed → pending; processing rejected
  ✅ list_visible  → owned / public / shared, no duplicates
  ✅ stale pending → only old pending documents
  ✅ abandoned run → heartbeat lease; expired run failed, scoped to its run id
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from pdfqa.core.errors import (
    ClaimLostError,
    ConflictError,
    DocumentNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from pdfqa.models.documents import DocumentGrant
from pdfqa.schemas.documents import IndexingStatus, VisibilityScope

pytestmark = [pytest.mark.unit, pytest.mark.registry]


# ─────────────────────────────────────────────────────────────────────────────
# Create / read
# ─────────────────────────────────────────────────────────────────────────────

class TestCreate:

    async def test_new_document_is_pending(self, registry):
        doc = await registry.create(owner_id="alice", name="Handbook", size=2048, tags=["hr", "policy"])

        assert doc.status is IndexingStatus.PENDING
        assert doc.is_indexed is False
        assert doc.total_chunks == 0
        assert doc.successful_chunks == 0
        assert doc.owner_id == "alice"
        assert doc.original_name == "Handbook"
        assert doc.vector_collection == "TestChunks"
        assert doc.tags == ["hr", "policy"]

    async def test_get_round_trips(self, registry):
        created = await registry.create(owner_id="alice", name="Handbook", size=1)
        loaded = await registry.get(created.uuid)
        assert loaded.uuid == created.uuid
        assert loaded.grants == {}

    async def test_get_unknown_raises(self, registry):
        with pytest.raises(DocumentNotFoundError):
            await registry.get(uuid4())

    @pytest.mark.parametrize("kwargs,field", [
        ({"name": "   "},                      "name"),
        ({"name": "x" * 256},                  "name"),
        ({"description": "d" * 501},           "description"),
        ({"tags": ["t" * 51]},                 "tags"),
        ({"size": -1},                         "size"),
        ({"mime_type": "text/plain"},          "mime_type"),
    ])
    async def test_bounds_enforced(self, registry, kwargs, field):
        params = {"owner_id": "alice", "name": "Handbook", "size": 1, **kwargs}
        with pytest.raises(ValidationError) as exc_info:
            await registry.create(**params)
        assert exc_info.value.field == field


# ─────────────────────────────────────────────────────────────────────────────
# Claim
# ─────────────────────────────────────────────────────────────────────────────

class TestClaim:

    async def test_claim_moves_to_processing(self, registry, document_factory):
        doc = await document_factory()
        run_id = await registry.claim_for_indexing(doc.uuid, embedding_model="m@1")

        loaded = await registry.get(doc.uuid)
        assert loaded.status is IndexingStatus.PROCESSING
        assert loaded.indexing_run_id == run_id
        assert loaded.embedding_model == "m@1"

    async def test_concurrent_claims_exactly_one_wins(self, registry, document_factory):
        doc = await document_factory()

        results = await asyncio.gather(
            registry.claim_for_indexing(doc.uuid),
            registry.claim_for_indexing(doc.uuid),
            return_exceptions=True,
        )

        wins   = [r for r in results if not isinstance(r, BaseException)]
        losses = [r for r in results if isinstance(r, ClaimLostError)]
        assert len(wins) == 1
        assert len(losses) == 1

    async def test_claim_of_completed_document_is_lost(self, registry, document_factory):
        doc = await document_factory(status="completed")
        with pytest.raises(ClaimLostError):
            await registry.claim_for_indexing(doc.uuid)

    async def test_claim_unknown_document(self, registry):
        with pytest.raises(DocumentNotFoundError):
            await registry.claim_for_indexing(uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Progress + terminal states
# ─────────────────────────────────────────────────────────────────────────────

class TestProgress:

    async def _processing(self, registry, document_factory, total=4):
        doc = await document_factory()
        run_id = await registry.claim_for_indexing(doc.uuid)
        await registry.set_total_chunks(doc.uuid, run_id, total)
        return doc, run_id

    async def test_progress_is_monotonic(self, registry, document_factory):
        doc, run_id = await self._processing(registry, document_factory)

        assert await registry.update_indexing_progress(doc.uuid, chunks_attempted=3, chunks_succeeded=2, run_id=run_id)
        assert not await registry.update_indexing_progress(doc.uuid, chunks_attempted=2, chunks_succeeded=1, run_id=run_id)

        loaded = await registry.get(doc.uuid)
        assert loaded.attempted_chunks == 3
        assert loaded.successful_chunks == 2

    async def test_progress_above_total_ignored(self, registry, document_factory):
        doc, run_id = await self._processing(registry, document_factory, total=2)

        changed = await registry.update_indexing_progress(doc.uuid, chunks_attempted=5, chunks_succeeded=5, run_id=run_id)

        assert changed is False
        assert (await registry.get(doc.uuid)).successful_chunks == 0

    async def test_progress_rejects_succeeded_above_attempted(self, registry, document_factory):
        doc, run_id = await self._processing(registry, document_factory)
        with pytest.raises(ValidationError):
            await registry.update_indexing_progress(doc.uuid, chunks_attempted=1, chunks_succeeded=2, run_id=run_id)

    async def test_complete_requires_every_chunk(self, registry, document_factory):
        doc, run_id = await self._processing(registry, document_factory, total=3)
        await registry.update_indexing_progress(doc.uuid, chunks_attempted=3, chunks_succeeded=2, run_id=run_id)

        with pytest.raises(ConflictError):
            await registry.mark_completed(doc.uuid, run_id)

    async def test_complete_sets_indexed_fields(self, registry, document_factory):
        doc = await document_factory(status="completed", total=3)

        assert doc.status is IndexingStatus.COMPLETED
        assert doc.is_indexed is True
        assert doc.indexed_at is not None
        assert doc.successful_chunks == doc.total_chunks == 3
        assert doc.error_message is None

    async def test_failed_keeps_partial_progress(self, registry, document_factory):
        doc = await document_factory(status="failed", total=3, succeeded=2)

        assert doc.status is IndexingStatus.FAILED
        assert doc.is_indexed is False
        assert doc.successful_chunks == 2
        assert doc.error_message

    async def test_stale_run_cannot_write(self, registry, document_factory):
        doc, _ = await self._processing(registry, document_factory)
        with pytest.raises(ClaimLostError):
            await registry.mark_failed(doc.uuid, uuid4(), "boom")


# ─────────────────────────────────────────────────────────────────────────────
# Re-index
# ─────────────────────────────────────────────────────────────────────────────

class TestReindex:

    async def test_reindex_completed_keeps_indexed_at(self, registry, document_factory):
        doc = await document_factory(status="completed")

        again = await registry.request_reindex(doc.uuid, user_id="alice")

        assert again.status is IndexingStatus.PENDING
        assert again.is_indexed is False
        assert again.total_chunks == 0
        assert again.indexed_at is not None

    async def test_reindex_failed_clears_error(self, registry, document_factory):
        doc = await document_factory(status="failed", succeeded=1)
        again = await registry.request_reindex(doc.uuid)
        assert again.error_message is None
        assert again.successful_chunks == 0

    async def test_reindex_processing_rejected(self, registry, document_factory):
        doc = await document_factory(status="processing")
        with pytest.raises(InvalidTransitionError):
            await registry.request_reindex(doc.uuid)


# ─────────────────────────────────────────────────────────────────────────────
# Listing
# ─────────────────────────────────────────────────────────────────────────────

class TestListVisible:

    async def test_scopes(self, registry, document_factory):
        own     = await document_factory(owner_id="alice", name="Own")
        public  = await document_factory(owner_id="bob", name="Public", is_public=True)
        shared  = await document_factory(owner_id="bob", name="Shared")
        hidden  = await document_factory(owner_id="bob", name="Hidden")

        def _grant(doc):
            doc.grants["alice"] = DocumentGrant(user_id="alice", permission="read")

        await registry.update_access(shared.uuid, _grant, expected_version=None, action="document.shared")

        async def names(scope):
            return {d.name for d in await registry.list_visible("alice", scope=scope)}

        assert await names(VisibilityScope.ALL) == {own.name, public.name, shared.name}
        assert await names(VisibilityScope.OWNED) == {own.name}
        assert await names(VisibilityScope.PUBLIC) == {public.name}
        assert await names(VisibilityScope.SHARED) == {shared.name}
        assert hidden.name not in await names(VisibilityScope.ALL)

    async def test_public_and_shared_listed_once(self, registry, document_factory):
        doc = await document_factory(owner_id="bob", is_public=True)

        def _grant(d):
            d.grants["alice"] = DocumentGrant(user_id="alice", permission="write")

        await registry.update_access(doc.uuid, _grant, expected_version=None, action="document.shared")

        listed = await registry.list_visible("alice")
        assert [d.uuid for d in listed] == [doc.uuid]

    async def test_stale_pending(self, registry, document_factory):
        await document_factory()
        assert await registry.list_stale_pending(timedelta(minutes=5)) == []
        stale = await registry.list_stale_pending(timedelta(seconds=-60))
        assert len(stale) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Abandoned runs (heartbeat lease)
# ─────────────────────────────────────────────────────────────────────────────

class TestAbandonedRuns:

    async def test_claim_and_progress_refresh_heartbeat(self, registry, document_factory):
        doc = await document_factory()
        run_id = await registry.claim_for_indexing(doc.uuid)
        claimed = await registry.get(doc.uuid)
        assert claimed.indexing_heartbeat_at is not None

        await registry.set_total_chunks(doc.uuid, run_id, 2)
        await registry.update_indexing_progress(doc.uuid, chunks_attempted=1, chunks_succeeded=1, run_id=run_id)

        assert (await registry.get(doc.uuid)).indexing_heartbeat_at >= claimed.indexing_heartbeat_at

    async def test_only_expired_processing_runs_listed(self, registry, document_factory):
        stuck = await document_factory(status="processing")
        await document_factory()
        await document_factory(status="failed")

        assert await registry.list_stale_processing(timedelta(minutes=17)) == []
        listed = await registry.list_stale_processing(timedelta(seconds=-60))
        assert [d.uuid for d in listed] == [stuck.uuid]

    async def test_abandoned_run_fails_and_can_be_retriggered(self, registry, document_factory):
        stuck = await document_factory(status="processing")

        failed = await registry.fail_abandoned_run(
            stuck.uuid, stuck.indexing_run_id, older_than=timedelta(seconds=-60),
        )

        assert failed.status is IndexingStatus.FAILED
        assert failed.error_message.startswith("indexing run abandoned: no progress since")
        again = await registry.request_reindex(stuck.uuid)
        assert again.status is IndexingStatus.PENDING
        assert again.indexing_heartbeat_at is None

    async def test_live_run_is_not_released(self, registry, document_factory):
        stuck = await document_factory(status="processing")

        with pytest.raises(ClaimLostError):
            await registry.fail_abandoned_run(stuck.uuid, stuck.indexing_run_id, older_than=timedelta(minutes=17))

        assert (await registry.get(stuck.uuid)).status is IndexingStatus.PROCESSING

    async def test_release_is_scoped_to_the_run(self, registry, document_factory):
        stuck = await document_factory(status="processing")

        with pytest.raises(ClaimLostError):
            await registry.fail_abandoned_run(stuck.uuid, uuid4(), older_than=timedelta(seconds=-60))

        assert (await registry.get(stuck.uuid)).status is IndexingStatus.PROCESSING
