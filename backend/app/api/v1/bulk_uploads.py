# backend/app/api/v1/bulk_uploads.py
"""
Bulk upload endpoints.

    POST /api/v1/bulk/{type}/upload     parse, then process in-request or queue a job
    POST /api/v1/bulk/{type}/validate   parse + validate only (preview, nothing written)
    GET  /api/v1/bulk/{type}/template   .xlsx template

Input problems (type, size, row count, header) are rejected here, before any
job exists. Small files are processed in-request unless ``async=true``.
"""

import uuid
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from backend.app.config import settings, BULK_ALLOWED_MIME_TYPES
from backend.app.db import get_db
from backend.app.models.enums import JobType
from backend.app.services import bulk_queue
from backend.app.services.audit import AuditSink
from backend.app.services.bulk_errors import (
    BulkError,
    EmptyFile,
    FileTooLarge,
    RowLimitExceeded,
    UnsupportedFormat,
)
from backend.app.services.bulk_processor import run_sync
from backend.app.services.bulk_validation import TenantContext, summarize, validate_rows
from backend.app.services.minio_client import archive_upload
from backend.app.services.row_parser import RawRow, detect_format, parse_rows
from backend.app.services.template_service import XLSX_MEDIA_TYPE, build_template, template_filename
from backend.app.schemas.bulk_job import ValidationPreview
from backend.app.utils.security import Principal, get_current_principal

from .bulk_deps import ensure_can_upload, http_error, job_type_param, resolve_institution

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/bulk", tags=["bulk-uploads"])


async def _read_upload(file: UploadFile) -> bytes:
    content = await file.read(settings.BULK_MAX_FILE_SIZE + 1)
    if len(content) > settings.BULK_MAX_FILE_SIZE:
        raise FileTooLarge(f"File exceeds {settings.BULK_MAX_FILE_SIZE} bytes")
    return content


def _check_type(file: UploadFile) -> None:
    detect_format(file.filename or "")
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type and content_type != "application/octet-stream" and content_type not in BULK_ALLOWED_MIME_TYPES:
        raise UnsupportedFormat(f"Unsupported content type {content_type}")


def _parse(content: bytes, filename: str, job_type: JobType) -> List[RawRow]:
    rows = parse_rows(content, filename, job_type)
    if not rows:
        raise EmptyFile("File contains no data rows")
    if len(rows) > settings.BULK_MAX_ROWS:
        raise RowLimitExceeded(f"File has {len(rows)} rows; the limit is {settings.BULK_MAX_ROWS}")
    return rows


# -------------------------
# UPLOAD
# -------------------------
@router.post("/{job_type}/upload")
async def upload_bulk_file(
    response: Response,
    job_type: JobType = Depends(job_type_param),
    file: UploadFile = File(...),
    run_async: bool = Query(False, alias="async"),
    institution_id: Optional[int] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    ensure_can_upload(principal, job_type)
    filename = file.filename or f"upload-{uuid.uuid4().hex}.csv"

    try:
        _check_type(file)
        content = await _read_upload(file)
        rows = _parse(content, filename, job_type)
        tenant_id = resolve_institution(db, principal, job_type, institution_id)
    except BulkError as e:
        raise http_error(e)

    audit = AuditSink(db)

    if not run_async and len(rows) <= settings.BULK_SYNC_ROW_THRESHOLD:
        ctx = TenantContext(
            uploader_id=principal.user_id,
            uploader_role=principal.role,
            institution_id=tenant_id,
            lineage_id=f"sync-{uuid.uuid4().hex[:16]}",
        )
        summary = await run_in_threadpool(run_sync, db, job_type, rows, ctx, audit)
        logger.info(
            "Sync %s upload by user %s: %s created, %s failed",
            job_type.value, principal.user_id, summary["success"], summary["failed"],
        )
        return {"mode": "sync", **summary}

    ctx = TenantContext(uploader_id=principal.user_id, uploader_role=principal.role, institution_id=tenant_id)
    source_path = await run_in_threadpool(archive_upload, principal.user_id, filename, content, file.content_type)
    try:
        job = await run_in_threadpool(
            lambda: bulk_queue.enqueue(
                db,
                job_type=job_type,
                rows=rows,
                ctx=ctx,
                file_name=filename,
                file_size=len(content),
                source_path=source_path,
                audit=audit,
            )
        )
    except BulkError as e:
        raise http_error(e)

    response.status_code = 202
    return {
        "mode": "async",
        "job_id": job.job_id,
        "status": job.status,
        "total_rows": job.total_rows,
        "message": f"Processing {job.total_rows} rows in the background",
    }


# -------------------------
# VALIDATE (preview)
# -------------------------
@router.post("/{job_type}/validate", response_model=ValidationPreview)
async def validate_bulk_file(
    job_type: JobType = Depends(job_type_param),
    file: UploadFile = File(...),
    institution_id: Optional[int] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    ensure_can_upload(principal, job_type)
    try:
        _check_type(file)
        content = await _read_upload(file)
        rows = _parse(content, file.filename or "upload.csv", job_type)
        tenant_id = resolve_institution(db, principal, job_type, institution_id)
    except BulkError as e:
        raise http_error(e)

    ctx = TenantContext(uploader_id=principal.user_id, uploader_role=principal.role, institution_id=tenant_id)
    verdicts = await run_in_threadpool(validate_rows, db, job_type, rows, ctx)
    return summarize(verdicts)


# -------------------------
# TEMPLATE
# -------------------------
@router.get("/{job_type}/template")
def download_template(
    job_type: JobType = Depends(job_type_param),
    principal: Principal = Depends(get_current_principal),
):
    ensure_can_upload(principal, job_type)
    return Response(
        content=build_template(job_type),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{template_filename(job_type)}"'},
    )
