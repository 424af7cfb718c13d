# backend/app/services/bulk_job_service.py
"""
Job record store for bulk uploads.

Owns the persisted BulkJob lifecycle. Every status change goes through
``_transition`` which enforces the state machine:

    QUEUED -> PROCESSING -> COMPLETED | FAILED | CANCELLED
    QUEUED -> CANCELLED | FAILED (enqueue failure)

Terminal states never change again.
"""

from __future__ import annotations

import json
import math
import uuid
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.db import safe_commit
from backend.app.models.base import utcnow
from backend.app.models.bulk_job import BulkJob
from backend.app.models.enums import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    JobStatus,
    JobType,
    TERMINAL_STATUSES,
)
from backend.app.services.bulk_errors import InvalidJobTransition, JobNotFound
from backend.app.services.bulk_validation import TenantContext
from backend.app.services.row_parser import RawRow

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"

# ---------------------------------------------------------
# PROMETHEUS METRICS
# ---------------------------------------------------------
BULK_JOBS_TOTAL = Counter(
    "bulk_jobs_total",
    "Bulk jobs by type and lifecycle event",
    ["job_type", "status"]  # QUEUED | COMPLETED | FAILED | CANCELLED
)

BULK_JOB_DURATION = Histogram(
    "bulk_job_duration_seconds",
    "Wall time from first start to terminal state",
    ["job_type"]
)


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------
def new_job_id() -> str:
    return f"bulk-{uuid.uuid4().hex[:16]}"


def compute_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 100 if processed else 0
    return min(100, round(processed / total * 100))


def _transition(job: BulkJob, target: JobStatus) -> None:
    current = JobStatus(job.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidJobTransition(current.value, target.value)
    job.status = target.value


def _finish(job: BulkJob, target: JobStatus) -> None:
    _transition(job, target)
    job.completed_at = utcnow()
    if job.started_at is not None:
        job.processing_time_ms = int((job.completed_at - job.started_at).total_seconds() * 1000)
        BULK_JOB_DURATION.labels(job_type=job.type).observe(job.processing_time_ms / 1000)
    BULK_JOBS_TOTAL.labels(job_type=job.type, status=target.value).inc()


def _apply_counters(
    job: BulkJob,
    processed: int,
    success_report: List[Dict[str, Any]],
    error_report: List[Dict[str, Any]],
    warnings: Optional[List[Dict[str, Any]]] = None,
) -> None:
    # new list objects so the JSON columns are flagged dirty
    job.processed_rows = processed
    job.success_count = len(success_report)
    job.failed_count = len(error_report)
    job.success_report = list(success_report)
    job.error_report = list(error_report)
    if warnings is not None:
        job.warnings = list(warnings)
    job.progress = compute_progress(processed, job.total_rows)


# ---------------------------------------------------------
# Create / read
# ---------------------------------------------------------
def create_job(
    db: Session,
    *,
    job_type: JobType,
    rows: List[RawRow],
    ctx: TenantContext,
    file_name: str,
    file_size: int,
    source_path: Optional[str] = None,
    retry_of: Optional[BulkJob] = None,
) -> BulkJob:
    """Persist a QUEUED job holding an immutable snapshot of ``rows``."""
    snapshot = [r.to_dict() for r in rows]
    job_id = new_job_id()
    job = BulkJob(
        job_id=job_id,
        lineage_id=retry_of.lineage_id if retry_of is not None else job_id,
        retry_of_id=retry_of.id if retry_of is not None else None,
        institution_id=ctx.institution_id,
        created_by_id=ctx.uploader_id,
        created_by_role=ctx.uploader_role.value,
        type=job_type.value,
        status=JobStatus.QUEUED.value,
        cancel_requested=False,
        attempts=0,
        file_name=file_name,
        file_size=file_size,
        row_bytes=len(json.dumps(snapshot, default=str).encode("utf-8")),
        source_path=source_path,
        row_snapshot=snapshot,
        total_rows=len(rows),
        processed_rows=0,
        success_count=0,
        failed_count=0,
        progress=0,
        success_report=[],
        error_report=[],
        warnings=[],
        queued_at=utcnow(),
    )
    db.add(job)
    safe_commit(db)
    db.refresh(job)
    BULK_JOBS_TOTAL.labels(job_type=job.type, status=JobStatus.QUEUED.value).inc()
    logger.info("Bulk job %s queued (%s, %s rows)", job.job_id, job.type, job.total_rows)
    return job


def get_job(db: Session, job_id: str, institution_id: Optional[int] = None, scoped: bool = False) -> BulkJob:
    """
    Fetch a job by public id. With ``scoped`` the job must belong to
    ``institution_id``; other tenants get the same 404 as a missing job.
    """
    job = db.scalar(select(BulkJob).where(BulkJob.job_id == job_id))
    if job is None or (scoped and job.institution_id != institution_id):
        raise JobNotFound(f"Bulk job {job_id} not found")
    return job


def snapshot_rows(job: BulkJob) -> List[RawRow]:
    return [RawRow.from_dict(r) for r in (job.row_snapshot or [])]


# ---------------------------------------------------------
# Lifecycle (worker side)
# ---------------------------------------------------------
def mark_started(db: Session, job: BulkJob) -> BulkJob:
    """
    Claim the job for an attempt. A redelivered job (already PROCESSING)
    starts again from row one with fresh counters.
    """
    current = JobStatus(job.status)
    if JobStatus.PROCESSING not in ALLOWED_TRANSITIONS[current]:
        raise InvalidJobTransition(current.value, JobStatus.PROCESSING.value)

    # conditional update: a concurrent cancel of a QUEUED job must win
    result = db.execute(
        update(BulkJob)
        .where(
            BulkJob.id == job.id,
            BulkJob.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]),
        )
        .values(
            status=JobStatus.PROCESSING.value,
            attempts=BulkJob.attempts + 1,
            started_at=func.coalesce(BulkJob.started_at, utcnow()),
            processed_rows=0,
            success_count=0,
            failed_count=0,
            progress=0,
            success_report=[],
            error_report=[],
            warnings=[],
        )
        .execution_options(synchronize_session=False)
    )
    safe_commit(db)
    db.refresh(job)
    if result.rowcount == 0:
        raise InvalidJobTransition(job.status, JobStatus.PROCESSING.value)
    logger.info("Bulk job %s started (attempt %s)", job.job_id, job.attempts)
    return job


def update_progress(
    db: Session,
    job: BulkJob,
    *,
    processed: int,
    success_report: List[Dict[str, Any]],
    error_report: List[Dict[str, Any]],
    warnings: List[Dict[str, Any]],
) -> BulkJob:
    _apply_counters(job, processed, success_report, error_report, warnings)
    safe_commit(db)
    return job


def mark_completed(
    db: Session,
    job: BulkJob,
    *,
    processed: int,
    success_report: List[Dict[str, Any]],
    error_report: List[Dict[str, Any]],
    warnings: List[Dict[str, Any]],
) -> BulkJob:
    _finish(job, JobStatus.COMPLETED)
    _apply_counters(job, processed, success_report, error_report, warnings)
    job.cancel_requested = False
    safe_commit(db)
    logger.info(
        "Bulk job %s completed: %s success, %s failed in %sms",
        job.job_id, job.success_count, job.failed_count, job.processing_time_ms,
    )
    return job


def mark_failed(
    db: Session,
    job: BulkJob,
    error_message: str,
    *,
    processed: Optional[int] = None,
    success_report: Optional[List[Dict[str, Any]]] = None,
    error_report: Optional[List[Dict[str, Any]]] = None,
    warnings: Optional[List[Dict[str, Any]]] = None,
) -> BulkJob:
    """Abort the job. Counters reflect exactly the rows attempted before the abort."""
    _finish(job, JobStatus.FAILED)
    if processed is not None:
        _apply_counters(job, processed, success_report or [], error_report or [], warnings)
    job.error_message = error_message[:2000]
    safe_commit(db)
    logger.warning("Bulk job %s failed: %s", job.job_id, error_message)
    return job


def record_attempt_failure(db: Session, job: BulkJob, error_message: str) -> BulkJob:
    """Note a failed attempt that will be retried; status stays PROCESSING."""
    job.error_message = f"Attempt {job.attempts} failed: {error_message}"[:2000]
    safe_commit(db)
    return job


def mark_cancelled(
    db: Session,
    job: BulkJob,
    *,
    processed: int,
    success_report: List[Dict[str, Any]],
    error_report: List[Dict[str, Any]],
    warnings: List[Dict[str, Any]],
) -> BulkJob:
    _finish(job, JobStatus.CANCELLED)
    _apply_counters(job, processed, success_report, error_report, warnings)
    job.error_message = CANCELLED_BY_USER
    safe_commit(db)
    logger.info("Bulk job %s cancelled after %s rows", job.job_id, processed)
    return job


def cancel_requested(db: Session, job: BulkJob) -> bool:
    """Re-read the cancel flag; another process may have set it."""
    db.refresh(job, attribute_names=["cancel_requested", "status"])
    return bool(job.cancel_requested) or job.status == JobStatus.CANCELLED.value


# ---------------------------------------------------------
# Lifecycle (client side)
# ---------------------------------------------------------
def request_cancel(db: Session, job: BulkJob) -> BulkJob:
    """
    QUEUED jobs are cancelled immediately. PROCESSING jobs get a flag the
    worker checks between rows. Terminal jobs cannot be cancelled.
    """
    status = JobStatus(job.status)
    if status is JobStatus.QUEUED:
        now = utcnow()
        result = db.execute(
            update(BulkJob)
            .where(BulkJob.id == job.id, BulkJob.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.CANCELLED.value,
                completed_at=now,
                error_message=CANCELLED_BY_USER,
            )
            .execution_options(synchronize_session=False)
        )
        safe_commit(db)
        db.refresh(job)
        if result.rowcount:
            BULK_JOBS_TOTAL.labels(job_type=job.type, status=JobStatus.CANCELLED.value).inc()
            logger.info("Bulk job %s cancelled before processing", job.job_id)
            return job
        # a worker claimed it in the meantime
        status = JobStatus(job.status)

    if status is JobStatus.PROCESSING:
        result = db.execute(
            update(BulkJob)
            .where(BulkJob.id == job.id, BulkJob.status == JobStatus.PROCESSING.value)
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        safe_commit(db)
        db.refresh(job)
        if result.rowcount:
            logger.info("Cancel requested for running bulk job %s", job.job_id)
            return job
        # the worker finished it in the meantime
        status = JobStatus(job.status)
    raise InvalidJobTransition(status.value, JobStatus.CANCELLED.value)


def mark_enqueue_failed(db: Session, job: BulkJob, error: str) -> BulkJob:
    _finish(job, JobStatus.FAILED)
    job.error_message = f"Failed to queue job: {error}"[:2000]
    safe_commit(db)
    return job


# ---------------------------------------------------------
# Queries
# ---------------------------------------------------------
def _scoped(stmt, institution_id: Optional[int], scoped: bool):
    if scoped:
        stmt = stmt.where(BulkJob.institution_id == institution_id)
    return stmt


def list_jobs(
    db: Session,
    *,
    institution_id: Optional[int] = None,
    scoped: bool = False,
    job_type: Optional[JobType] = None,
    status: Optional[JobStatus] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    created_by_id: Optional[int] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    stmt = _scoped(select(BulkJob), institution_id, scoped)
    if job_type is not None:
        stmt = stmt.where(BulkJob.type == job_type.value)
    if status is not None:
        stmt = stmt.where(BulkJob.status == status.value)
    if created_by_id is not None:
        stmt = stmt.where(BulkJob.created_by_id == created_by_id)
    if from_date is not None:
        stmt = stmt.where(BulkJob.queued_at >= datetime.combine(from_date, time.min))
    if to_date is not None:
        stmt = stmt.where(BulkJob.queued_at <= datetime.combine(to_date, time.max))

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    items = db.scalars(
        stmt.order_by(BulkJob.id.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return {
        "items": list(items),
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def get_active_jobs(db: Session, institution_id: Optional[int] = None, scoped: bool = False) -> List[BulkJob]:
    stmt = _scoped(select(BulkJob), institution_id, scoped).where(
        BulkJob.status.in_([s.value for s in ACTIVE_STATUSES])
    )
    return list(db.scalars(stmt.order_by(BulkJob.id.asc())).all())


def get_jobs_by_user(db: Session, user_id: int, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    return list_jobs(db, created_by_id=user_id, page=page, limit=limit)


def get_job_stats(db: Session, institution_id: Optional[int] = None, scoped: bool = False) -> Dict[str, Any]:
    base = _scoped(select(BulkJob), institution_id, scoped).subquery()

    by_status = {s.value: 0 for s in JobStatus}
    for status, count in db.execute(select(base.c.status, func.count()).group_by(base.c.status)):
        by_status[status] = count

    by_type = {t.value: 0 for t in JobType}
    for job_type, count in db.execute(select(base.c.type, func.count()).group_by(base.c.type)):
        by_type[job_type] = count

    recent = db.scalars(
        _scoped(select(BulkJob), institution_id, scoped).order_by(BulkJob.id.desc()).limit(5)
    ).all()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_type": by_type,
        "recent_jobs": list(recent),
    }


def cleanup_old_jobs(db: Session, days: Optional[int] = None) -> int:
    """Delete terminal job records older than ``days`` (default BULK_JOB_HISTORY_DAYS)."""
    days = settings.BULK_JOB_HISTORY_DAYS if days is None else days
    cutoff = utcnow() - timedelta(days=days)
    # retries point at their source job; detach before deleting
    old_ids = select(BulkJob.id).where(
        BulkJob.status.in_([s.value for s in TERMINAL_STATUSES]),
        BulkJob.completed_at < cutoff,
    )
    ids = list(db.scalars(old_ids).all())
    if not ids:
        return 0
    for child in db.scalars(select(BulkJob).where(BulkJob.retry_of_id.in_(ids))).all():
        child.retry_of_id = None
    db.flush()
    result = db.execute(delete(BulkJob).where(BulkJob.id.in_(ids)))
    safe_commit(db)
    logger.info("Cleaned up %s bulk jobs older than %s days", result.rowcount, days)
    return result.rowcount or 0
