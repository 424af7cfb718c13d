# backend/app/services/bulk_processor.py
"""
Bulk row processing.

RowPipeline is the validate-then-persist loop shared by the synchronous upload
path and the worker. Rows run strictly in file order. Each row commits on its
own, so a later failure never undoes earlier rows.

Inside the per-row scope:
- validation failures, natural-key conflicts and unexpected errors while
  persisting become errorReport entries and the loop moves on;
- infrastructure errors (lost DB / broker connection) propagate and abort
  the job.

process_job wraps the pipeline with the BulkJob lifecycle: claim, batched
progress persistence and events, cooperative cancellation between rows and
the terminal transition.
"""

from __future__ import annotations

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.db import safe_commit, safe_rollback
from backend.app.models.bulk_job import BulkJob
from backend.app.models.enums import JobType, Role
from backend.app.services import bulk_job_service
from backend.app.services.audit import AuditSink
from backend.app.services.bulk_validation import TenantContext, build_validator
from backend.app.services.entity_writers import RowConflict, build_writer
from backend.app.services.error_report import build_error_report_csv
from backend.app.services.minio_client import store_error_report
from backend.app.services.progress_publisher import ProgressPublisher
from backend.app.services.row_parser import RawRow

logger = logging.getLogger(__name__)

INFRASTRUCTURE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
    RedisConnectionError,
    ConnectionError,
)

BULK_ROWS_TOTAL = Counter(
    "bulk_rows_total",
    "Bulk upload rows by outcome",
    ["job_type", "outcome"]  # created | existing | invalid | conflict | error
)


# ---------------------------------------------------------
# Row pipeline
# ---------------------------------------------------------
@dataclass
class RowRun:
    processed: int = 0
    success_report: List[Dict[str, Any]] = field(default_factory=list)
    error_report: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success_count(self) -> int:
        return len(self.success_report)

    @property
    def failed_count(self) -> int:
        return len(self.error_report)

    def counters(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "success_report": self.success_report,
            "error_report": self.error_report,
            "warnings": self.warnings,
        }


class RowPipeline:
    def __init__(
        self,
        db: Session,
        job_type: JobType,
        ctx: TenantContext,
        audit: Optional[AuditSink] = None,
        job_id: Optional[str] = None,
    ):
        self.db = db
        self.job_type = job_type
        self.ctx = ctx
        self.audit = audit
        self.job_id = job_id
        self.validator = build_validator(db, job_type, ctx)
        self.writer = build_writer(db, job_type, ctx)
        self.run = RowRun()

    def _reject(self, row: int, code: str, field_name: Optional[str], message: str, value: Any = None) -> None:
        self.run.error_report.append({
            "row": row,
            "code": code,
            "field": field_name,
            "message": message,
            "values": {field_name: value} if field_name and value is not None else {},
            "errors": [{"field": field_name, "code": code, "message": message, "value": value}],
        })

    def _rollback_quietly(self) -> None:
        try:
            safe_rollback(self.db)
        except Exception:
            logger.warning("rollback failed while handling row error", exc_info=True)

    def process_row(self, row: RawRow) -> None:
        verdict = self.validator.validate(row)
        for w in verdict.warnings:
            self.run.warnings.append({"row": row.index, "field": w.field, "message": w.message})

        if not verdict.is_valid:
            self.run.error_report.append(verdict.error_entry())
            self.run.processed += 1
            BULK_ROWS_TOTAL.labels(job_type=self.job_type.value, outcome="invalid").inc()
            return

        try:
            outcome = self.writer.write(verdict)
            safe_commit(self.db)
        except RowConflict as e:
            self._rollback_quietly()
            self._reject(row.index, "ALREADY_EXISTS", e.field, e.message, e.value)
            BULK_ROWS_TOTAL.labels(job_type=self.job_type.value, outcome="conflict").inc()
        except IntegrityError as e:
            self._rollback_quietly()
            logger.info("Row %s hit a unique constraint: %s", row.index, e.orig)
            self._reject(row.index, "CONFLICT", self.writer.key_field,
                         "Row conflicts with an existing record", verdict.data.get(self.writer.key_field))
            BULK_ROWS_TOTAL.labels(job_type=self.job_type.value, outcome="conflict").inc()
        except INFRASTRUCTURE_ERRORS:
            self._rollback_quietly()
            raise
        except Exception as e:
            self._rollback_quietly()
            logger.exception("Row %s of %s failed to persist", row.index, self.job_id or "sync upload")
            self._reject(row.index, "PROCESSING_ERROR", None, f"Failed to save row: {e}")
            BULK_ROWS_TOTAL.labels(job_type=self.job_type.value, outcome="error").inc()
        else:
            self.run.success_report.append({"row": row.index, "action": outcome.action, "entity": outcome.entity})
            BULK_ROWS_TOTAL.labels(job_type=self.job_type.value, outcome=outcome.action).inc()
            if outcome.action == "created" and self.audit is not None:
                self.audit.log(
                    "bulk.entity_created",
                    f"{outcome.entity['type']} created from row {row.index}",
                    user_id=self.ctx.uploader_id,
                    institution_id=self.ctx.institution_id,
                    meta={"job_id": self.job_id, "row": row.index, "entity": outcome.entity},
                )
        self.run.processed += 1


def run_sync(
    db: Session,
    job_type: JobType,
    rows: List[RawRow],
    ctx: TenantContext,
    audit: Optional[AuditSink] = None,
) -> Dict[str, Any]:
    """In-request processing for small files; no job record is kept."""
    started = time.monotonic()
    pipeline = RowPipeline(db, job_type, ctx, audit=audit)
    for row in rows:
        pipeline.process_row(row)
    run = pipeline.run
    return {
        "total": len(rows),
        "success": run.success_count,
        "failed": run.failed_count,
        "success_report": run.success_report,
        "error_report": run.error_report,
        "warnings": run.warnings,
        "processing_time_ms": int((time.monotonic() - started) * 1000),
    }


# ---------------------------------------------------------
# Job processing
# ---------------------------------------------------------
def _job_context(job: BulkJob) -> TenantContext:
    return TenantContext(
        uploader_id=job.created_by_id,
        uploader_role=Role(job.created_by_role),
        institution_id=job.institution_id,
        lineage_id=job.lineage_id,
    )


def _attach_error_report(db: Session, job: BulkJob) -> None:
    if not job.error_report:
        return
    path = store_error_report(job.job_id, build_error_report_csv(job.error_report))
    if path:
        job.error_report_path = path
        safe_commit(db)


def process_job(
    db: Session,
    job_id: str,
    *,
    final_attempt: bool = True,
    publisher_factory: Callable[..., ProgressPublisher] = ProgressPublisher,
    audit: Optional[AuditSink] = None,
) -> Dict[str, Any]:
    """
    Run one attempt of job ``job_id``.

    Terminal jobs are skipped (redelivery after completion). An error that
    escapes the row scope is re-raised. Before that the job is marked FAILED,
    unless it is an infrastructure error and ``final_attempt`` is false: then
    the failure is only noted and the job stays PROCESSING for the next attempt.
    """
    job = bulk_job_service.get_job(db, job_id)
    if job.is_terminal:
        logger.info("Bulk job %s already %s, skipping", job_id, job.status)
        return {"ok": True, "job_id": job_id, "status": job.status, "skipped": True}

    audit = audit if audit is not None else AuditSink(db)
    bulk_job_service.mark_started(db, job)

    publisher = publisher_factory(job.job_id, job.created_by_id)
    pipeline = RowPipeline(db, JobType(job.type), _job_context(job), audit=audit, job_id=job.job_id)
    run = pipeline.run
    rows = bulk_job_service.snapshot_rows(job)
    total = len(rows)
    persist_every = max(1, settings.BULK_PROGRESS_EVERY_ROWS)

    publisher.progress(0, total, 0, 0, force=True)

    try:
        for row in rows:
            if bulk_job_service.cancel_requested(db, job):
                run.cancelled = True
                break
            pipeline.process_row(row)
            if run.processed % persist_every == 0:
                bulk_job_service.update_progress(db, job, **run.counters())
            publisher.progress(run.processed, total, run.success_count, run.failed_count)
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        logger.exception("Bulk job %s aborted after %s rows", job_id, run.processed)
        will_retry = not final_attempt and isinstance(exc, INFRASTRUCTURE_ERRORS)
        try:
            safe_rollback(db)
            if not will_retry:
                bulk_job_service.mark_failed(db, job, error, **run.counters())
                publisher.failed(job, error)
                audit.log(
                    "bulk.job_failed",
                    f"Bulk {job.type.lower()} job {job.job_id} failed",
                    user_id=job.created_by_id,
                    institution_id=job.institution_id,
                    meta={"job_id": job.job_id, "error": error, "processed": run.processed},
                )
            else:
                bulk_job_service.record_attempt_failure(db, job, error)
        except Exception:
            logger.exception("Could not record failure of bulk job %s", job_id)
        raise

    if run.cancelled:
        bulk_job_service.mark_cancelled(db, job, **run.counters())
        publisher.cancelled(job)
        audit.log(
            "bulk.job_cancelled",
            f"Bulk {job.type.lower()} job {job.job_id} cancelled",
            user_id=job.created_by_id,
            institution_id=job.institution_id,
            meta={"job_id": job.job_id, "processed": run.processed},
        )
        return {"ok": True, "job_id": job_id, "status": job.status, "processed": run.processed}

    bulk_job_service.mark_completed(db, job, **run.counters())
    _attach_error_report(db, job)
    publisher.completed(job)
    audit.log(
        "bulk.job_completed",
        f"Bulk {job.type.lower()} job {job.job_id} completed",
        user_id=job.created_by_id,
        institution_id=job.institution_id,
        meta={
            "job_id": job.job_id,
            "success": job.success_count,
            "failed": job.failed_count,
            "processing_time_ms": job.processing_time_ms,
        },
    )
    return {
        "ok": True,
        "job_id": job_id,
        "status": job.status,
        "processed": job.processed_rows,
        "success": job.success_count,
        "failed": job.failed_count,
    }
