# backend/app/services/bulk_queue.py
"""
Job queue for bulk uploads, backed by Celery.

The QUEUED record is committed before the task is sent, so a job id handed
back to a client always exists. Delivery is at-least-once (acks_late); the
processor makes repeated rows harmless.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.db import safe_commit, safe_rollback
from backend.app.models.bulk_job import BulkJob
from backend.app.models.enums import JobStatus, JobType
from backend.app.services import bulk_job_service
from backend.app.services.audit import AuditSink
from backend.app.services.bulk_errors import JobNotRetryable, QueueUnavailable
from backend.app.services.bulk_validation import TenantContext
from backend.app.services.processing_lock import distributed_lock
from backend.app.services.row_parser import RawRow

logger = logging.getLogger(__name__)

BULK_QUEUE = "bulk_jobs"


def _dispatch_to_worker(job_id: str) -> str:
    # lazy import: keeps the API importable without loading the task modules
    from backend.app.tasks.bulk_tasks import process_bulk_job_task

    result = process_bulk_job_task.apply_async(args=[job_id], task_id=job_id, queue=BULK_QUEUE)
    return result.id


def _celery():
    from backend.app.celery_app import celery_app
    return celery_app


def enqueue(
    db: Session,
    *,
    job_type: JobType,
    rows: List[RawRow],
    ctx: TenantContext,
    file_name: str,
    file_size: int,
    source_path: Optional[str] = None,
    retry_of: Optional[BulkJob] = None,
    audit: Optional[AuditSink] = None,
) -> BulkJob:
    """
    Persist a QUEUED job for ``rows`` and hand it to a worker.

    Raises QueueUnavailable when the broker refuses the task; the job is then
    already FAILED with the reason recorded.
    """
    audit = audit if audit is not None else AuditSink(db)
    job = bulk_job_service.create_job(
        db,
        job_type=job_type,
        rows=rows,
        ctx=ctx,
        file_name=file_name,
        file_size=file_size,
        source_path=source_path,
        retry_of=retry_of,
    )

    try:
        job.task_id = _dispatch_to_worker(job.job_id)
    except Exception as e:
        logger.exception("Failed to dispatch bulk job %s", job.job_id)
        safe_rollback(db)
        bulk_job_service.mark_enqueue_failed(db, job, str(e))
        audit.log(
            "bulk.job_failed",
            f"Bulk {job.type.lower()} job {job.job_id} could not be queued",
            user_id=ctx.uploader_id,
            institution_id=ctx.institution_id,
            meta={"job_id": job.job_id, "error": str(e)},
        )
        raise QueueUnavailable(f"Failed to queue job: {e}") from e

    safe_commit(db)
    audit.log(
        "bulk.job_queued",
        f"Bulk {job.type.lower()} upload queued: {job.file_name} ({job.total_rows} rows)",
        user_id=ctx.uploader_id,
        institution_id=ctx.institution_id,
        meta={
            "job_id": job.job_id,
            "type": job.type,
            "total_rows": job.total_rows,
            "retry_of": retry_of.job_id if retry_of is not None else None,
        },
    )
    return job


def cancel(db: Session, job: BulkJob, audit: Optional[AuditSink] = None) -> BulkJob:
    """Cancel a QUEUED job outright, or ask the running worker to stop after its current row."""
    job = bulk_job_service.request_cancel(db, job)

    if job.status == JobStatus.CANCELLED.value:
        audit = audit if audit is not None else AuditSink(db)
        audit.log(
            "bulk.job_cancelled",
            f"Bulk {job.type.lower()} job {job.job_id} cancelled before processing",
            user_id=job.created_by_id,
            institution_id=job.institution_id,
            meta={"job_id": job.job_id},
        )
        if job.task_id:
            try:
                _celery().control.revoke(job.task_id)
            except Exception as e:
                # the worker skips terminal jobs anyway
                logger.warning("revoke of %s failed: %s", job.task_id, e)
    return job


def retry(db: Session, job: BulkJob, ctx: TenantContext, audit: Optional[AuditSink] = None) -> BulkJob:
    """
    Resubmit a FAILED job's stored rows as a new job. The new job shares the
    source lineage, so rows the failed attempt already persisted resolve to
    the existing entities.
    """
    if job.status != JobStatus.FAILED.value:
        raise JobNotRetryable(f"Only failed jobs can be retried (job is {job.status})")

    with distributed_lock(f"bulk-retry:{job.job_id}"):
        pending = db.scalar(
            select(BulkJob.job_id).where(
                BulkJob.retry_of_id == job.id,
                BulkJob.status != JobStatus.FAILED.value,
            )
        )
        if pending is not None:
            raise JobNotRetryable(f"Job already resubmitted as {pending}")

        retry_ctx = TenantContext(
            uploader_id=ctx.uploader_id,
            uploader_role=ctx.uploader_role,
            institution_id=job.institution_id,
            lineage_id=job.lineage_id,
        )
        new_job = enqueue(
            db,
            job_type=JobType(job.type),
            rows=bulk_job_service.snapshot_rows(job),
            ctx=retry_ctx,
            file_name=job.file_name,
            file_size=job.file_size,
            source_path=job.source_path,
            retry_of=job,
            audit=audit,
        )
    logger.info("Bulk job %s resubmitted as %s", job.job_id, new_job.job_id)
    return new_job


def queue_status(db: Session) -> Dict[str, Any]:
    """Worker-side counts from Celery inspect (best-effort) plus record counts by status."""
    workers: Dict[str, Any] = {"available": False, "active": 0, "reserved": 0, "scheduled": 0}
    try:
        inspect = _celery().control.inspect(timeout=1.0)
        for key in ("active", "reserved", "scheduled"):
            replies = getattr(inspect, key)() or {}
            workers[key] = sum(len(tasks or []) for tasks in replies.values())
            workers["available"] = workers["available"] or bool(replies)
    except Exception as e:
        logger.warning("celery inspect failed: %s", e)

    records = {s.value: 0 for s in JobStatus}
    for status, count in db.execute(select(BulkJob.status, func.count()).group_by(BulkJob.status)):
        records[status] = count

    return {
        "queue": BULK_QUEUE,
        "workers": workers,
        "waiting": records[JobStatus.QUEUED.value],
        "active": records[JobStatus.PROCESSING.value],
        "completed": records[JobStatus.COMPLETED.value],
        "failed": records[JobStatus.FAILED.value],
        "cancelled": records[JobStatus.CANCELLED.value],
    }


def _set_consuming(consume: bool) -> Dict[str, Any]:
    action = "add_consumer" if consume else "cancel_consumer"
    replies: Optional[List[Any]] = None
    try:
        replies = getattr(_celery().control, action)(BULK_QUEUE, reply=True, timeout=1.0) or []
    except Exception as e:
        logger.warning("celery %s for %s failed: %s", action, BULK_QUEUE, e)

    return {
        "queue": BULK_QUEUE,
        "paused": not consume,
        "delivered": replies is not None,
        "workers": len(replies or []),
    }


def pause() -> Dict[str, Any]:
    """
    Stop workers consuming the bulk queue. Running jobs finish; new jobs stay
    QUEUED until resume().
    """
    status = _set_consuming(False)
    logger.warning("Bulk operations queue paused (%s workers acknowledged)", status["workers"])
    return status


def resume() -> Dict[str, Any]:
    status = _set_consuming(True)
    logger.info("Bulk operations queue resumed (%s workers acknowledged)", status["workers"])
    return status
