"""
Celery Application Factory

Configures the Celery app for async document indexing.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional — indexing state is tracked in the database).

Queue topology:
  documents.index         one message per document to index
  documents.maintenance   beat-driven re-queue of stale pending documents
                          and release of abandoned processing runs

Task payloads carry only the document id. File bytes are loaded from the
FileStore inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from pdfqa.core.config import get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

INDEX_QUEUE       = "documents.index"
MAINTENANCE_QUEUE = "documents.maintenance"

TASK_QUEUES = (
    Queue(
        INDEX_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=INDEX_QUEUE,
        durable=True,
    ),
    Queue(
        MAINTENANCE_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "pdfqa.workers.tasks.index_document":          {"queue": INDEX_QUEUE},
    "pdfqa.workers.tasks.requeue_stale_documents": {"queue": MAINTENANCE_QUEUE},
}

# Pending documents older than this are re-published by the beat task
STALE_PENDING_SECONDS = 300

TASK_SOFT_TIME_LIMIT = 900
TASK_TIME_LIMIT      = 960

# A processing run silent for longer than the hard limit has no live worker
STALE_PROCESSING_SECONDS = TASK_TIME_LIMIT + 60


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery("pdfqa")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=INDEX_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=INDEX_QUEUE,

        # --- Reliability ---
        task_acks_late=True,           # ack only after the task completes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one document at a time per worker process

        # --- Timeouts ---
        task_soft_time_limit=TASK_SOFT_TIME_LIMIT,
        task_time_limit=TASK_TIME_LIMIT,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale pending / abandoned run scanner) ---
        beat_schedule={
            "requeue-stale-documents-every-60s": {
                "task":     "pdfqa.workers.tasks.requeue_stale_documents",
                "schedule": 60,
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["pdfqa.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: one log line per task boundary
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
