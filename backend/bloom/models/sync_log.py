from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bloom.models.base import Base, UuidPrimaryKeyMixin


class SyncType(str, enum.Enum):
    full = "full"
    incremental = "incremental"
    webhook = "webhook"
    manual = "manual"


class SyncLogStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    success = "success"
    error = "error"


class SyncLog(Base, UuidPrimaryKeyMixin):
    __tablename__ = "sync_log"

    sync_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False, default="sync")
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SyncLogStatus.in_progress.value
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    practitioner_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
