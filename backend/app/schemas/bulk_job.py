from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel

from .base import ORMBase


class BulkJobSummary(ORMBase):
    job_id: str
    type: str
    status: str
    file_name: str
    file_size: int
    institution_id: int | None
    created_by_id: int
    retry_of_id: int | None = None
    total_rows: int
    processed_rows: int
    success_count: int
    failed_count: int
    progress: int
    attempts: int
    cancel_requested: bool
    error_message: str | None = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_ms: int | None = None


class BulkJobDetail(BulkJobSummary):
    lineage_id: str
    success_report: List[Dict[str, Any]] = []
    error_report: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    error_report_path: str | None = None


class BulkJobList(BaseModel):
    items: List[BulkJobSummary]
    total: int
    page: int
    limit: int
    total_pages: int


class BulkJobStats(BaseModel):
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    recent_jobs: List[BulkJobSummary]


class ValidationPreview(BaseModel):
    total_rows: int
    valid_rows: int
    invalid_rows: int
    rows: List[Dict[str, Any]]
