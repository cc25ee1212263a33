"""
Unit Tests — Celery task bodies
════════════════════════════════
The async bodies are exercised directly with test Components; Celery and
the broker are never involved.

  • run_indexing            — not found, missing file, lost claim, pipeline run
  • requeue_stale_documents — re-publishes stale pending documents only,
                              fails processing runs whose lease expired
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from pdfqa.schemas.documents import IndexingStatus
from pdfqa.services.indexing import NO_TEXT_MESSAGE
from pdfqa.workers import tasks

pytestmark = [pytest.mark.unit, pytest.mark.indexing]


class TestRunIndexing:

    async def test_unknown_document(self, components):
        assert await tasks.run_indexing(components, uuid4()) == {"status": "not_found"}

    async def test_pipeline_runs_on_stored_bytes(self, components, document_service, registry, sample_pdf_bytes):
        doc = await document_service.create_document("alice", filename="blank.pdf", data=sample_pdf_bytes)

        result = await tasks.run_indexing(components, doc.uuid)

        assert result["status"] == "failed"
        loaded = await registry.get(doc.uuid)
        assert loaded.error_message == NO_TEXT_MESSAGE
        assert loaded.page_count == 1

    async def test_missing_file_marks_failed(self, components, registry, document_factory):
        doc = await document_factory()

        result = await tasks.run_indexing(components, doc.uuid)

        assert result == {"status": "failed", "error": tasks.MISSING_FILE_MESSAGE}
        loaded = await registry.get(doc.uuid)
        assert loaded.status is IndexingStatus.FAILED
        assert loaded.error_message == tasks.MISSING_FILE_MESSAGE

    async def test_duplicate_delivery_skipped(self, components, document_service, registry, sample_pdf_bytes):
        doc = await document_service.create_document("alice", filename="blank.pdf", data=sample_pdf_bytes)
        await registry.claim_for_indexing(doc.uuid)

        assert await tasks.run_indexing(components, doc.uuid) == {"status": "skipped"}


class TestRequeue:

    async def test_requeues_stale_pending(self, components, document_factory, monkeypatch):
        pending   = await document_factory()
        await document_factory(status="completed")

        @asynccontextmanager
        async def _components():
            yield components

        apply_async = MagicMock()
        monkeypatch.setattr(tasks, "_worker_components", _components)
        monkeypatch.setattr(tasks, "STALE_PENDING_SECONDS", -60)
        monkeypatch.setattr(tasks.index_document, "apply_async", apply_async)

        result = await tasks._requeue_stale_documents_async()

        assert result == {"requeued": 1, "abandoned": 0}
        apply_async.assert_called_once()
        assert apply_async.call_args.kwargs["kwargs"] == {"document_id": str(pending.uuid)}
        assert apply_async.call_args.kwargs["queue"] == "documents.index"

    async def test_fresh_pending_not_requeued(self, components, document_factory, monkeypatch):
        await document_factory()

        @asynccontextmanager
        async def _components():
            yield components

        apply_async = MagicMock()
        monkeypatch.setattr(tasks, "_worker_components", _components)
        monkeypatch.setattr(tasks.index_document, "apply_async", apply_async)

        assert await tasks._requeue_stale_documents_async() == {"requeued": 0, "abandoned": 0}
        apply_async.assert_not_called()
        assert timedelta(seconds=tasks.STALE_PENDING_SECONDS) == timedelta(minutes=5)

    async def test_abandoned_run_is_failed(self, components, registry, document_factory, monkeypatch):
        stuck = await document_factory(status="processing")
        done  = await document_factory(status="completed")

        @asynccontextmanager
        async def _components():
            yield components

        apply_async = MagicMock()
        monkeypatch.setattr(tasks, "_worker_components", _components)
        monkeypatch.setattr(tasks, "STALE_PROCESSING_SECONDS", -60)
        monkeypatch.setattr(tasks.index_document, "apply_async", apply_async)

        result = await tasks._requeue_stale_documents_async()

        assert result == {"requeued": 0, "abandoned": 1}
        apply_async.assert_not_called()
        loaded = await registry.get(stuck.uuid)
        assert loaded.status is IndexingStatus.FAILED
        assert loaded.error_message.startswith("indexing run abandoned")
        assert (await registry.get(done.uuid)).status is IndexingStatus.COMPLETED

    async def test_live_run_keeps_its_claim(self, components, registry, document_factory, monkeypatch):
        running = await document_factory(status="processing")

        @asynccontextmanager
        async def _components():
            yield components

        monkeypatch.setattr(tasks, "_worker_components", _components)
        monkeypatch.setattr(tasks.index_document, "apply_async", MagicMock())

        assert await tasks._requeue_stale_documents_async() == {"requeued": 0, "abandoned": 0}
        assert (await registry.get(running.uuid)).status is IndexingStatus.PROCESSING
        assert tasks.STALE_PROCESSING_SECONDS > tasks.celery_app.conf.task_time_limit
