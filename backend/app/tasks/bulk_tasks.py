# backend/app/tasks/bulk_tasks.py
"""
Celery tasks for bulk uploads.

process_bulk_job_task runs one attempt of a queued job through the row
pipeline (see services/bulk_processor). Infrastructure failures are retried
with exponential backoff up to BULK_TASK_MAX_RETRIES; the last attempt leaves
the job FAILED with the error recorded.

Progress is published on:
- f"bulk:{job_id}"       -> job-specific channel (progress/completed/failed/cancelled)
- f"user:{user_id}:bulk" -> user-level notifications (bulk_progress, bulk_completed, ...)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from backend.app.celery_app import celery_app
from backend.app.config import settings
from backend.app.db import SessionLocal
from backend.app.services.bulk_errors import InvalidJobTransition, JobNotFound, LockNotAcquired
from backend.app.services.bulk_job_service import cleanup_old_jobs
from backend.app.services.bulk_processor import INFRASTRUCTURE_ERRORS, process_job
from backend.app.services.processing_lock import distributed_lock

logger = logging.getLogger(__name__)


def retry_countdown(retries: int) -> int:
    return settings.BULK_RETRY_BACKOFF_SECONDS * (2 ** retries)


@celery_app.task(
    bind=True,
    name="backend.app.tasks.bulk_tasks.process_bulk_job_task",
    acks_late=True,
    max_retries=settings.BULK_TASK_MAX_RETRIES,
)
def process_bulk_job_task(self, job_id: str) -> Dict[str, Any]:
    retries = self.request.retries or 0
    final_attempt = retries >= self.max_retries
    logger.info("Celery: starting bulk job %s (attempt %s)", job_id, retries + 1)

    db = SessionLocal()
    try:
        return process_job(db, job_id, final_attempt=final_attempt)

    except JobNotFound:
        logger.error("Job not found: %s", job_id)
        return {"ok": False, "reason": "job_not_found", "job_id": job_id}

    except InvalidJobTransition as e:
        # cancelled (or finished by another delivery) before this worker claimed it
        logger.info("Job %s not claimable: %s", job_id, e.current)
        return {"ok": True, "job_id": job_id, "status": e.current, "skipped": True}

    except INFRASTRUCTURE_ERRORS as exc:
        if final_attempt:
            raise
        countdown = retry_countdown(retries)
        logger.warning("Bulk job %s hit %s; retrying in %ss", job_id, type(exc).__name__, countdown)
        raise self.retry(exc=exc, countdown=countdown)

    finally:
        db.close()


@celery_app.task(name="bulk.cleanup_old_jobs")
def cleanup_old_bulk_jobs(days: Optional[int] = None) -> Dict[str, Any]:
    """Daily beat task: drop terminal job records past the history window."""
    db = SessionLocal()
    try:
        with distributed_lock("bulk-cleanup", ttl=300, blocking_timeout=0):
            removed = cleanup_old_jobs(db, days)
        return {"ok": True, "removed": removed}
    except LockNotAcquired:
        logger.info("Bulk cleanup already running elsewhere")
        return {"ok": True, "removed": 0, "skipped": True}
    finally:
        db.close()
