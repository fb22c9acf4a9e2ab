from __future__ import annotations

from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bloom.models.base import Base, SyncedMixin, TimestampMixin, UuidPrimaryKeyMixin

DEFAULT_MHCP_TOTAL_SESSIONS = 10


class Client(Base, UuidPrimaryKeyMixin, TimestampMixin, SyncedMixin):
    __tablename__ = "clients"
    __table_args__ = (
        UniqueConstraint(
            "practitioner_id",
            "halaxy_patient_id",
            name="uq_clients_practitioner_halaxy_patient",
        ),
    )

    halaxy_patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    practitioner_id: Mapped[str] = mapped_column(
        ForeignKey("practitioners.id"), nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    initials: Mapped[str] = mapped_column(String(4), nullable=False, default="??")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    mhcp_total_sessions: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MHCP_TOTAL_SESSIONS
    )
    mhcp_used_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mhcp_plan_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    mhcp_plan_expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    first_session_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    presenting_issues: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    practitioner = relationship("Practitioner", lazy="joined")
