from datetime import datetime, timezone
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, DateTime, func


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IdMixin:
    """
    Adds an auto-increment primary key ID to a model.
    """
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        index=True
    )


class TimestampMixin:
    """
    Adds created_at and updated_at timestamps.
    - created_at: set on insert
    - updated_at: refreshed on every ORM update
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class ImportSourceMixin:
    """
    Marks rows created by a bulk upload.
    - source_lineage_id: lineage of the job (shared by a job and its retries)
    - source_row: 1-based data row the entity came from
    """
    source_lineage_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    source_row: Mapped[int | None] = mapped_column(Integer, nullable=True)
