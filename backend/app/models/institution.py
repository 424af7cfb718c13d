from sqlalchemy import String, Boolean, Text
from sqlalchemy.orm import relationship, Mapped, mapped_column

from backend.app.db import Base
from backend.app.models.base import IdMixin, TimestampMixin, ImportSourceMixin


class Institution(Base, IdMixin, TimestampMixin, ImportSourceMixin):
    """
    A college / polytechnic / ITI. ``code`` is the natural key.
    """

    __tablename__ = "institutions"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pin_code: Mapped[str | None] = mapped_column(String(6), nullable=True)
    website: Mapped[str | None] = mapped_column(String(512), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    users = relationship("User", back_populates="institution")
    batches = relationship("Batch", back_populates="institution")

    def __repr__(self):
        return f"<Institution id={self.id} code={self.code}>"
