from __future__ import annotations

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bloom.models.base import Base, SyncedMixin, TimestampMixin, UuidPrimaryKeyMixin


class Practitioner(Base, UuidPrimaryKeyMixin, TimestampMixin, SyncedMixin):
    __tablename__ = "practitioners"

    halaxy_practitioner_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    halaxy_practitioner_role_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    qualifications: Mapped[str | None] = mapped_column(Text, nullable=True)
    specialty: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
