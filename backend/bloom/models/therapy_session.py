from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bloom.models.base import Base, SyncedMixin, TimestampMixin, UuidPrimaryKeyMixin


class SessionStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class TherapySession(Base, UuidPrimaryKeyMixin, TimestampMixin, SyncedMixin):
    __tablename__ = "sessions"

    halaxy_appointment_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    practitioner_id: Mapped[str] = mapped_column(
        ForeignKey("practitioners.id"), nullable=False, index=True
    )
    client_id: Mapped[str | None] = mapped_column(
        ForeignKey("clients.id"), nullable=True, index=True
    )
    scheduled_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    session_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SessionStatus.scheduled.value
    )
    session_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    fee_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AUD")
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
