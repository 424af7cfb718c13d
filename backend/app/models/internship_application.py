from datetime import date

from sqlalchemy import (
    String,
    Boolean,
    Date,
    Text,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin, ImportSourceMixin


class InternshipApplication(Base, IdMixin, TimestampMixin, ImportSourceMixin):
    """
    Internship record. Self-identified internships arrive through bulk upload
    and have no posting; the company details live on the application itself.
    """

    __tablename__ = "internship_applications"

    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), index=True, nullable=False
    )
    institution_id: Mapped[int] = mapped_column(
        ForeignKey("institutions.id", ondelete="CASCADE"), index=True, nullable=False
    )

    is_self_identified: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(32), default="APPLIED", nullable=False)
    internship_status: Mapped[str] = mapped_column(String(32), default="SELF_IDENTIFIED", nullable=False)

    # -----------------------------
    # Company
    # -----------------------------
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_contact: Mapped[str | None] = mapped_column(String(20), nullable=True)
    company_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hr_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hr_designation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hr_contact: Mapped[str | None] = mapped_column(String(20), nullable=True)
    hr_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    job_profile: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stipend: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    duration: Mapped[str | None] = mapped_column(String(64), nullable=True)
    joining_letter_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # -----------------------------
    # Faculty mentor
    # -----------------------------
    faculty_mentor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    faculty_mentor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    faculty_mentor_contact: Mapped[str | None] = mapped_column(String(20), nullable=True)
    faculty_mentor_designation: Mapped[str | None] = mapped_column(String(255), nullable=True)

    student = relationship("Student")

    __table_args__ = (
        # one application per source row of an upload lineage
        UniqueConstraint("source_lineage_id", "source_row", name="uq_internship_source_row"),
    )

    def __repr__(self):
        return f"<InternshipApplication id={self.id} student={self.student_id} company={self.company_name}>"
