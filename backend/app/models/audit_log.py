from sqlalchemy import (
    String,
    ForeignKey,
    JSON,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin


class AuditLog(Base, IdMixin, TimestampMixin):
    """
    Audit trail for bulk pipeline actions:
    - job queued / completed / failed / cancelled
    - entities created from an uploaded row
    """

    __tablename__ = "audit_logs"

    # Who performed the action?
    user_id: Mapped[int | None] = mapped_column(index=True, nullable=True)

    institution_id: Mapped[int | None] = mapped_column(
        ForeignKey("institutions.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )

    # "bulk.job_queued", "bulk.entity_created", ...
    event_type: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    # Human-readable message
    message: Mapped[str] = mapped_column(String(512), nullable=False)

    # JSON metadata (job id, row, entity reference)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_audit_event_user", "event_type", "user_id"),
    )

    def __repr__(self):
        return f"<AuditLog id={self.id} event={self.event_type} user={self.user_id}>"
