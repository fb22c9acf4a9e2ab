from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field


class PatientInput(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: str | None = None
    date_of_birth: date | None = None
    gender: Literal["male", "female", "other", "unknown"] | None = None


class AppointmentInput(BaseModel):
    patient_id: str
    start: datetime
    end: datetime
    practitioner_id: str | None = None
    practitioner_role_id: str | None = None
    description: str | None = None
    service_type: str | None = None
    healthcare_service_id: str | None = None
    location_type: Literal["clinic", "telehealth", "home"] = "clinic"


class TokenStatusOut(BaseModel):
    configured: bool
    has_token: bool = Field(serialization_alias="hasToken")
    expires_at: str | None = Field(default=None, serialization_alias="expiresAt")
    is_expired: bool = Field(serialization_alias="isExpired")


class SyncStatusOut(BaseModel):
    last_full_sync: datetime | None = Field(default=None, serialization_alias="lastFullSync")
    last_incremental_sync: datetime | None = Field(
        default=None, serialization_alias="lastIncrementalSync"
    )
    status: Literal["healthy", "stale", "error"]
    error_message: str | None = Field(default=None, serialization_alias="errorMessage")


class WebhookResultOut(BaseModel):
    success: bool
    event: str
    records_processed: int = Field(serialization_alias="recordsProcessed")
    duration: int
