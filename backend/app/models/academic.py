from sqlalchemy import String, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin


class Batch(Base, IdMixin, TimestampMixin):
    """Admission batch (e.g. ``2023-2026``), scoped to one institution."""

    __tablename__ = "batches"

    name: Mapped[str] = mapped_column(String(64), nullable=False)
    institution_id: Mapped[int] = mapped_column(
        ForeignKey("institutions.id", ondelete="CASCADE"), index=True, nullable=False
    )

    institution = relationship("Institution", back_populates="batches")

    __table_args__ = (
        UniqueConstraint("institution_id", "name", name="uq_batch_institution_name"),
    )


class Branch(Base, IdMixin, TimestampMixin):
    """Branch of study, shared by every institution."""

    __tablename__ = "branches"

    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    code: Mapped[str | None] = mapped_column(String(32), nullable=True)
