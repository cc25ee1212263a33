"""
Indexing state machine — the single place that decides which transitions
are legal and which columns each transition writes.

    pending ──claim──► processing ──► completed
       ▲                    │
       │                    └──────► failed
       └──── re-index ◄──── completed | failed

The registry turns transition_values() into one conditional UPDATE whose
WHERE clause is `indexing_status IN sources_for(target)`, so a transition
and its side effects (is_indexed, indexed_at, counters) always land in the
same atomic write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func

from pdfqa.core.errors import InvalidTransitionError
from pdfqa.models.documents import Document
from pdfqa.schemas.documents import IndexingStatus

MAX_ERROR_MESSAGE_LENGTH = 1000

_TRANSITIONS: dict[IndexingStatus, frozenset[IndexingStatus]] = {
    IndexingStatus.PENDING:    frozenset({IndexingStatus.PROCESSING}),
    IndexingStatus.PROCESSING: frozenset({IndexingStatus.COMPLETED, IndexingStatus.FAILED}),
    IndexingStatus.COMPLETED:  frozenset({IndexingStatus.PENDING}),
    IndexingStatus.FAILED:     frozenset({IndexingStatus.PENDING}),
}


def can_transition(current: IndexingStatus | str, target: IndexingStatus | str) -> bool:
    return IndexingStatus(target) in _TRANSITIONS[IndexingStatus(current)]


def ensure_transition(current: IndexingStatus | str, target: IndexingStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move a document from '{IndexingStatus(current).value}' "
            f"to '{IndexingStatus(target).value}'.",
            details={"current": IndexingStatus(current).value, "target": IndexingStatus(target).value},
        )


def sources_for(target: IndexingStatus) -> list[str]:
    """States from which `target` may be entered (as stored column values)."""
    return sorted(s.value for s, targets in _TRANSITIONS.items() if target in targets)


def transition_values(
    target:        IndexingStatus,
    *,
    now:           datetime,
    error_message: str | None = None,
) -> dict[str, Any]:
    """
    Column values written when a document enters `target`.

    processing starts the run's heartbeat; completed sets is_indexed and
    indexed_at (only if unset) together with the status; failed requires a
    diagnostic; pending (re-index) resets the run, its heartbeat and its
    counters but never touches indexed_at.
    """
    if target is IndexingStatus.PROCESSING:
        return {
            "indexing_status":       IndexingStatus.PROCESSING.value,
            "error_message":         None,
            "total_chunks":          0,
            "successful_chunks":     0,
            "attempted_chunks":      0,
            "indexing_heartbeat_at": now,
        }

    if target is IndexingStatus.COMPLETED:
        return {
            "indexing_status": IndexingStatus.COMPLETED.value,
            "is_indexed":      True,
            "indexed_at":      func.coalesce(Document.indexed_at, now),
            "error_message":   None,
        }

    if target is IndexingStatus.FAILED:
        message = (error_message or "").strip()
        if not message:
            raise ValueError("A failed transition requires an error message")
        return {
            "indexing_status": IndexingStatus.FAILED.value,
            "error_message":   message[:MAX_ERROR_MESSAGE_LENGTH],
        }

    return {
        "indexing_status":       IndexingStatus.PENDING.value,
        "is_indexed":            False,
        "error_message":         None,
        "indexing_run_id":       None,
        "indexing_heartbeat_at": None,
        "total_chunks":          0,
        "successful_chunks":     0,
        "attempted_chunks":      0,
    }
