from datetime import date

from sqlalchemy import (
    String,
    Integer,
    Float,
    Date,
    Text,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin, ImportSourceMixin


class Student(Base, IdMixin, TimestampMixin, ImportSourceMixin):
    """
    Student profile linked 1:1 to a STUDENT login.
    ``enrollment_number`` is unique system-wide.
    """

    __tablename__ = "students"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    institution_id: Mapped[int] = mapped_column(
        ForeignKey("institutions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True, nullable=False)
    branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id"), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    enrollment_number: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    roll_number: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    branch_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_semester: Mapped[int | None] = mapped_column(Integer, nullable=True)

    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_contact: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tenth_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    twelfth_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)

    user = relationship("User", back_populates="student")
    batch = relationship("Batch")

    __table_args__ = (
        Index("idx_student_institution_roll", "institution_id", "roll_number"),
    )

    def __repr__(self):
        return f"<Student id={self.id} enrollment={self.enrollment_number}>"
