from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bloom.models.base import Base, SyncedMixin, TimestampMixin, UuidPrimaryKeyMixin


class AvailabilitySlot(Base, UuidPrimaryKeyMixin, TimestampMixin, SyncedMixin):
    __tablename__ = "availability_slots"

    halaxy_slot_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    practitioner_id: Mapped[str] = mapped_column(
        ForeignKey("practitioners.id"), nullable=False, index=True
    )
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    slot_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    halaxy_schedule_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    location_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    service_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_bookable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
