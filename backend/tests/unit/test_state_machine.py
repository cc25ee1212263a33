"""
Unit Tests — Indexing state machine
════════════════════════════════════
  • Legal transitions      — pending→processing→completed|failed→pending
  • Illegal transitions    — raise InvalidTransitionError
  • transition_values()    — columns written per target state
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from pdfqa.core.errors import InvalidTransitionError
from pdfqa.schemas.documents import IndexingStatus as S
from pdfqa.services.indexing_state import (
    MAX_ERROR_MESSAGE_LENGTH,
    can_transition,
    ensure_transition,
    sources_for,
    transition_values,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.mark.unit
@pytest.mark.registry
class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (S.PENDING,    S.PROCESSING),
        (S.PROCESSING, S.COMPLETED),
        (S.PROCESSING, S.FAILED),
        (S.COMPLETED,  S.PENDING),
        (S.FAILED,     S.PENDING),
    ])
    def test_legal(self, current, target):
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.PENDING,    S.COMPLETED),
        (S.PENDING,    S.FAILED),
        (S.PROCESSING, S.PENDING),
        (S.COMPLETED,  S.PROCESSING),
        (S.FAILED,     S.COMPLETED),
    ])
    def test_illegal(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.http_status == 409

    def test_accepts_stored_string_values(self):
        assert can_transition("completed", "pending")

    def test_sources_for(self):
        assert sources_for(S.PENDING) == ["completed", "failed"]
        assert sources_for(S.PROCESSING) == ["pending"]


@pytest.mark.unit
@pytest.mark.registry
class TestTransitionValues:

    def test_claim_resets_counters(self):
        values = transition_values(S.PROCESSING, now=NOW)
        assert values["indexing_status"] == "processing"
        assert values["successful_chunks"] == 0
        assert values["error_message"] is None
        assert values["indexing_heartbeat_at"] == NOW

    def test_completed_sets_is_indexed(self):
        values = transition_values(S.COMPLETED, now=NOW)
        assert values["is_indexed"] is True
        assert "indexed_at" in values

    def test_failed_requires_message(self):
        with pytest.raises(ValueError):
            transition_values(S.FAILED, now=NOW, error_message="   ")

    def test_failed_message_truncated(self):
        values = transition_values(S.FAILED, now=NOW, error_message="x" * 5000)
        assert len(values["error_message"]) == MAX_ERROR_MESSAGE_LENGTH

    def test_reindex_keeps_indexed_at(self):
        values = transition_values(S.PENDING, now=NOW)
        assert values["is_indexed"] is False
        assert values["indexing_run_id"] is None
        assert values["indexing_heartbeat_at"] is None
        assert "indexed_at" not in values
