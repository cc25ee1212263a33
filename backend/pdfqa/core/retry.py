"""
Bounded retry wrapper for external calls.

Every call to an external collaborator (embedding, vector index, LLM) goes
through call_with_retry():

  attempt ──► asyncio.wait_for(timeout) ──► ok → return
                 │
                 ├─ timeout / transient error → RetryableUpstreamError
                 │      └─ sleep (exponential backoff) and retry until the
                 │         attempt budget is spent, then re-raise
                 │
                 └─ anything else → PermanentUpstreamError (no retry)

A hang is therefore always converted into a classified failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pdfqa.core.config import RetryPolicy
from pdfqa.core.errors import PdfQAError, RetryableUpstreamError, classify_upstream_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    fn:        Callable[[], Awaitable[T]],
    *,
    policy:    RetryPolicy,
    timeout:   float,
    operation: str,
) -> T:
    """
    Invoke `fn` with a per-attempt timeout and the given retry budget.

    Raises:
        RetryableUpstreamError: transient failure persisted through every attempt.
        PermanentUpstreamError: non-transient failure (raised on first occurrence).
    """

    async def _attempt() -> T:
        try:
            return await asyncio.wait_for(fn(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RetryableUpstreamError(
                f"{operation} timed out after {timeout}s"
            ) from exc
        except PdfQAError:
            raise
        except Exception as exc:
            raise classify_upstream_error(exc, operation) from exc

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.attempts)),
        wait=wait_exponential(multiplier=policy.backoff_base, max=policy.backoff_max),
        retry=retry_if_exception_type(RetryableUpstreamError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return await retrying(_attempt)
