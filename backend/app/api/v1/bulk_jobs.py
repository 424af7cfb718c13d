# backend/app/api/v1/bulk_jobs.py
"""
Bulk job history and control.

Every lookup is tenant-scoped: callers below state level only see jobs of
their own institution, and a job from another tenant answers 404.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.models.enums import JobStatus, JobType, Role, STATE_LEVEL_ROLES
from backend.app.services import bulk_job_service, bulk_queue
from backend.app.services.bulk_errors import BulkError
from backend.app.services.bulk_validation import TenantContext
from backend.app.services.error_report import build_error_report_csv
from backend.app.schemas.bulk_job import BulkJobDetail, BulkJobList, BulkJobStats, BulkJobSummary
from backend.app.utils.security import Principal, get_current_principal, require_roles

from .bulk_deps import http_error, job_scope

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/bulk/jobs", tags=["bulk-jobs"])


def _load_job(db: Session, job_id: str, principal: Principal):
    institution_id, scoped = job_scope(principal)
    try:
        return bulk_job_service.get_job(db, job_id, institution_id=institution_id, scoped=scoped)
    except BulkError as e:
        raise http_error(e)


# -------------------------
# LISTS
# -------------------------
@router.get("", response_model=BulkJobList)
def list_bulk_jobs(
    type: Optional[str] = Query(None),
    status: Optional[JobStatus] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    institution_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    job_type = None
    if type:
        try:
            job_type = JobType.from_slug(type)
        except ValueError:
            raise HTTPException(status_code=400, detail="unknown_upload_type")

    scope_id, scoped = job_scope(principal)
    if not scoped and institution_id is not None:
        # state-level callers may narrow to one institution
        scope_id, scoped = institution_id, True

    return bulk_job_service.list_jobs(
        db,
        institution_id=scope_id,
        scoped=scoped,
        job_type=job_type,
        status=status,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
    )


@router.get("/active", response_model=list[BulkJobSummary])
def active_bulk_jobs(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    institution_id, scoped = job_scope(principal)
    return bulk_job_service.get_active_jobs(db, institution_id=institution_id, scoped=scoped)


@router.get("/my-jobs", response_model=BulkJobList)
def my_bulk_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return bulk_job_service.get_jobs_by_user(db, principal.user_id, page=page, limit=limit)


@router.get("/stats", response_model=BulkJobStats)
def bulk_job_stats(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    institution_id, scoped = job_scope(principal)
    return bulk_job_service.get_job_stats(db, institution_id=institution_id, scoped=scoped)


@router.get("/queue-status")
def bulk_queue_status(
    principal: Principal = Depends(require_roles(STATE_LEVEL_ROLES)),
    db: Session = Depends(get_db),
):
    return bulk_queue.queue_status(db)


@router.post("/queue/pause")
def pause_bulk_queue(principal: Principal = Depends(require_roles([Role.SYSTEM_ADMIN]))):
    return bulk_queue.pause()


@router.post("/queue/resume")
def resume_bulk_queue(principal: Principal = Depends(require_roles([Role.SYSTEM_ADMIN]))):
    return bulk_queue.resume()


# -------------------------
# SINGLE JOB
# -------------------------
@router.get("/{job_id}", response_model=BulkJobDetail)
def get_bulk_job(job_id: str, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return _load_job(db, job_id, principal)


@router.get("/{job_id}/error-report")
def download_error_report(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    job = _load_job(db, job_id, principal)
    if not job.error_report:
        raise HTTPException(status_code=404, detail="no_errors_for_job")
    return Response(
        content=build_error_report_csv(job.error_report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{job.job_id}-errors.csv"'},
    )


@router.post("/{job_id}/cancel", response_model=BulkJobSummary)
def cancel_bulk_job(job_id: str, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    job = _load_job(db, job_id, principal)
    try:
        return bulk_queue.cancel(db, job)
    except BulkError as e:
        raise http_error(e)


@router.post("/{job_id}/retry", response_model=BulkJobSummary, status_code=202)
def retry_bulk_job(job_id: str, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    job = _load_job(db, job_id, principal)
    ctx = TenantContext(
        uploader_id=principal.user_id,
        uploader_role=principal.role,
        institution_id=job.institution_id,
    )
    try:
        return bulk_queue.retry(db, job, ctx)
    except BulkError as e:
        raise http_error(e)
