from datetime import datetime

from sqlalchemy import (
    Integer,
    String,
    Text,
    ForeignKey,
    Boolean,
    DateTime,
    JSON,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin
from backend.app.models.enums import JobStatus, TERMINAL_STATUSES


class BulkJob(Base, IdMixin, TimestampMixin):
    """
    One uploaded file submitted for asynchronous processing.

    The row snapshot is written once at enqueue time and never touched
    afterwards; workers and retries read rows from it, not from the file.
    """

    __tablename__ = "bulk_jobs"

    # --------------------------------------
    # Identity / ownership
    # --------------------------------------
    job_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    lineage_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    retry_of_id: Mapped[int | None] = mapped_column(
        ForeignKey("bulk_jobs.id", ondelete="SET NULL"), index=True, nullable=True
    )
    institution_id: Mapped[int | None] = mapped_column(
        ForeignKey("institutions.id", ondelete="SET NULL"), index=True, nullable=True
    )
    created_by_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    created_by_role: Mapped[str] = mapped_column(String(32), nullable=False)

    # --------------------------------------
    # Classification / lifecycle
    # --------------------------------------
    type: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.QUEUED.value, index=True, nullable=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --------------------------------------
    # Source
    # --------------------------------------
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    row_bytes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    source_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    row_snapshot: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # --------------------------------------
    # Progress
    # --------------------------------------
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # --------------------------------------
    # Outcome
    # --------------------------------------
    success_report: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    error_report: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    warnings: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_report_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    queued_at: Mapped[datetime | None] = mapped_column(DateTime, index=True, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_bulkjob_status_institution", "status", "institution_id"),
        Index("idx_bulkjob_type_status", "type", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_STATUSES

    def __repr__(self):
        return f"<BulkJob id={self.id} job_id={self.job_id} type={self.type} status={self.status}>"
