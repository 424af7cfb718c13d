from sqlalchemy import (
    String,
    Boolean,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin, ImportSourceMixin


class User(Base, IdMixin, TimestampMixin, ImportSourceMixin):
    """
    Login identity for every role (state staff, principals, faculty, students).
    Email is the natural key and is unique across the whole system.
    """

    __tablename__ = "users"

    # -----------------------------
    # Authentication
    # -----------------------------
    email: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False
    )

    hashed_password: Mapped[str] = mapped_column(
        String(255), nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=False)

    # -----------------------------
    # Identity
    # -----------------------------
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    role: Mapped[str] = mapped_column(String(32), index=True, nullable=False)

    institution_id: Mapped[int | None] = mapped_column(
        ForeignKey("institutions.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )

    # -----------------------------
    # Staff details
    # -----------------------------
    designation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    employee_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    institution = relationship("Institution", back_populates="users")
    student = relationship("Student", back_populates="user", uselist=False)

    __table_args__ = (
        Index("idx_user_role_institution", "role", "institution_id"),
    )

    def __repr__(self):
        return f"<User id={self.id} email={self.email} role={self.role}>"
