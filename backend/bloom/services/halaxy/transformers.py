"""Pure mapping functions from Halaxy FHIR resources to local records.

Raw payloads are validated into the models in ``bloom.schemas.fhir``; a shape
that fails validation, or lacks a field the local row cannot do without,
raises ``TransformError`` so the caller can record it against that one entity.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, TypeVar

from pydantic import ValidationError

from bloom.models.base import new_uuid, utcnow
from bloom.models.client import DEFAULT_MHCP_TOTAL_SESSIONS
from bloom.models.therapy_session import SessionStatus
from bloom.schemas.fhir import (
    ContactPoint,
    Extension,
    FhirAppointment,
    FhirModel,
    FhirPatient,
    FhirPractitioner,
    FhirSlot,
    HumanName,
)
from bloom.services.halaxy.errors import TransformError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=FhirModel)

APPOINTMENT_STATUS_MAP: dict[str, SessionStatus] = {
    "proposed": SessionStatus.scheduled,
    "pending": SessionStatus.scheduled,
    "booked": SessionStatus.scheduled,
    "waitlist": SessionStatus.scheduled,
    "arrived": SessionStatus.confirmed,
    "checked-in": SessionStatus.confirmed,
    "fulfilled": SessionStatus.completed,
    "cancelled": SessionStatus.cancelled,
    "entered-in-error": SessionStatus.cancelled,
    "noshow": SessionStatus.no_show,
}

ACTIVE_STATUSES = {SessionStatus.scheduled, SessionStatus.confirmed, SessionStatus.in_progress}


@dataclass
class PractitionerRecord:
    id: str
    halaxy_practitioner_id: str
    first_name: str
    last_name: str
    display_name: str
    email: str
    phone: str | None
    qualifications: str | None
    specialty: str | None
    is_active: bool
    last_synced_at: datetime

    def values(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ClientRecord:
    id: str
    halaxy_patient_id: str
    practitioner_id: str
    first_name: str
    last_name: str
    initials: str
    email: str | None
    phone: str | None
    date_of_birth: date | None
    mhcp_total_sessions: int
    mhcp_used_sessions: int
    mhcp_plan_start_date: date | None
    mhcp_plan_expiry_date: date | None
    presenting_issues: str | None
    is_active: bool
    last_synced_at: datetime

    def values(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    id: str
    halaxy_appointment_id: str
    practitioner_id: str
    client_id: str | None
    scheduled_start_time: datetime
    scheduled_end_time: datetime
    actual_start_time: datetime | None
    actual_end_time: datetime | None
    session_number: int
    status: str
    session_type: str | None
    notes: str | None
    fee: Decimal | None
    fee_currency: str
    is_paid: bool
    last_synced_at: datetime

    def values(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SlotRecord:
    id: str
    halaxy_slot_id: str
    practitioner_id: str
    slot_start: datetime
    slot_end: datetime
    duration_minutes: int
    status: str
    halaxy_schedule_id: str | None
    location_type: str
    service_category: str | None
    is_bookable: bool
    last_synced_at: datetime

    def values(self) -> dict[str, Any]:
        return asdict(self)


def _validate(model: type[ModelT], entity_type: str, raw: Any) -> ModelT:
    if isinstance(raw, model):
        resource = raw
    else:
        try:
            resource = model.model_validate(raw)
        except ValidationError as exc:
            entity_id = raw.get("id") if isinstance(raw, dict) else None
            raise TransformError(
                entity_type, entity_id, f"Malformed {entity_type} resource: {exc}"
            ) from exc
    if not resource.id:
        raise TransformError(entity_type, None, f"{entity_type} resource has no id")
    return resource


# -- names and contact points ---------------------------------------------


def _primary_name(names: list[HumanName]) -> HumanName | None:
    return names[0] if names else None


def _first_last(name: HumanName | None) -> tuple[str, str]:
    if name is None:
        return "", ""
    first = name.given[0] if name.given else ""
    return first, name.family or ""


def build_display_name(name: HumanName | None) -> str:
    if name is None:
        return "Unknown"
    parts = [
        name.prefix[0] if name.prefix else None,
        name.given[0] if name.given else None,
        name.family,
        *name.suffix,
    ]
    display = " ".join(part for part in parts if part)
    return display or "Unknown"


def build_initials(first_name: str, last_name: str) -> str:
    first = first_name[:1].upper() or "?"
    last = last_name[:1].upper() or "?"
    return first + last


def _telecom(points: Iterable[ContactPoint], system: str) -> str | None:
    for point in points:
        if point.system == system and point.value:
            return point.value
    return None


# -- extensions -----------------------------------------------------------


def _find_extension(extensions: Iterable[Extension], *fragments: str) -> Extension | None:
    for extension in extensions:
        if any(fragment in extension.url for fragment in fragments):
            return extension
    return None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning("Ignoring unparseable FHIR date %r", value)
        return None


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Ignoring unparseable FHIR instant %r", value)
        return None
    return _as_utc(parsed)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _mhcp_total(extensions: list[Extension]) -> int:
    extension = _find_extension(extensions, "mhcp-total", "mental-health-plan-sessions")
    if extension is None or extension.value_integer is None:
        return DEFAULT_MHCP_TOTAL_SESSIONS
    return extension.value_integer


def _mhcp_date(extensions: list[Extension], kind: str) -> date | None:
    extension = _find_extension(extensions, f"mhcp-{kind}", f"mental-health-plan-{kind}")
    return _parse_date(extension.value_date) if extension else None


# -- practitioners ---------------------------------------------------------


def transform_practitioner(raw: Any, existing_id: str | None = None) -> PractitionerRecord:
    fhir = _validate(FhirPractitioner, "practitioner", raw)
    name = _primary_name(fhir.name)
    first_name, last_name = _first_last(name)

    qualifications: list[str] = []
    specialty = None
    for qualification in fhir.qualification:
        coding = qualification.code.coding[0] if qualification.code and qualification.code.coding else None
        label = (coding.display if coding else None) or (
            qualification.identifier[0].value if qualification.identifier else None
        )
        if label:
            qualifications.append(label)
        if specialty is None and qualification.code:
            specialty = next(
                (
                    entry.display
                    for entry in qualification.code.coding
                    if entry.display and "psycholog" in entry.display.lower()
                ),
                None,
            )

    return PractitionerRecord(
        id=existing_id or new_uuid(),
        halaxy_practitioner_id=fhir.id,
        first_name=first_name,
        last_name=last_name,
        display_name=build_display_name(name),
        email=_telecom(fhir.telecom, "email") or "",
        phone=_telecom(fhir.telecom, "phone"),
        qualifications=", ".join(qualifications) or None,
        specialty=specialty,
        is_active=fhir.active is not False,
        last_synced_at=utcnow(),
    )


# -- patients --------------------------------------------------------------


def transform_patient(
    raw: Any,
    practitioner_id: str,
    existing_id: str | None = None,
    session_count: int | None = None,
) -> ClientRecord:
    fhir = _validate(FhirPatient, "patient", raw)
    first_name, last_name = _first_last(_primary_name(fhir.name))
    presenting = _find_extension(fhir.extension, "presenting-issues")

    return ClientRecord(
        id=existing_id or new_uuid(),
        halaxy_patient_id=fhir.id,
        practitioner_id=practitioner_id,
        first_name=first_name,
        last_name=last_name,
        initials=build_initials(first_name, last_name),
        email=_telecom(fhir.telecom, "email"),
        phone=_telecom(fhir.telecom, "phone") or _telecom(fhir.telecom, "sms"),
        date_of_birth=_parse_date(fhir.birth_date),
        mhcp_total_sessions=_mhcp_total(fhir.extension),
        mhcp_used_sessions=session_count or 0,
        mhcp_plan_start_date=_mhcp_date(fhir.extension, "plan-start"),
        mhcp_plan_expiry_date=_mhcp_date(fhir.extension, "plan-expiry"),
        presenting_issues=presenting.value_string if presenting else None,
        is_active=fhir.active is not False,
        last_synced_at=utcnow(),
    )


# -- appointments ----------------------------------------------------------


def map_appointment_status(fhir_status: str | None) -> SessionStatus:
    status = APPOINTMENT_STATUS_MAP.get(fhir_status or "")
    if status is None:
        logger.warning("Unmapped Halaxy appointment status %r, treating as scheduled", fhir_status)
        return SessionStatus.scheduled
    return status


def is_completed_status(status: SessionStatus | str) -> bool:
    return SessionStatus(status) is SessionStatus.completed


def is_active_status(status: SessionStatus | str) -> bool:
    return SessionStatus(status) in ACTIVE_STATUSES


def extract_id_from_reference(reference: str | None) -> str | None:
    if not reference:
        return None
    return reference.rstrip("/").split("/")[-1] or None


def _participant_id(appointment: FhirAppointment, resource_type: str) -> str | None:
    prefix = f"{resource_type}/"
    for participant in appointment.participant:
        reference = participant.actor.reference if participant.actor else None
        if reference and reference.startswith(prefix):
            return extract_id_from_reference(reference)
    return None


def get_patient_id_from_appointment(raw: Any) -> str | None:
    return _participant_id(_as_appointment(raw), "Patient")


def get_practitioner_id_from_appointment(raw: Any) -> str | None:
    return _participant_id(_as_appointment(raw), "Practitioner")


def _as_appointment(raw: Any) -> FhirAppointment:
    if isinstance(raw, FhirAppointment):
        return raw
    try:
        return FhirAppointment.model_validate(raw)
    except ValidationError as exc:
        raise TransformError("appointment", None, f"Malformed appointment resource: {exc}") from exc


def _session_type(fhir: FhirAppointment) -> str | None:
    if fhir.service_type and fhir.service_type[0].coding:
        display = fhir.service_type[0].coding[0].display
        if display:
            return display
    if fhir.appointment_type and fhir.appointment_type.coding:
        return fhir.appointment_type.coding[0].display
    return None


def _fee(extensions: list[Extension]) -> Decimal | None:
    extension = _find_extension(extensions, "fee", "amount")
    if extension is None or extension.value_money is None or extension.value_money.value is None:
        return None
    return Decimal(str(extension.value_money.value)).quantize(Decimal("0.01"))


def _is_paid(extensions: list[Extension]) -> bool:
    extension = _find_extension(extensions, "paid", "payment-status")
    return bool(extension and extension.value_boolean is True)


def _actual_time(extensions: list[Extension], kind: str) -> datetime | None:
    extension = _find_extension(extensions, f"actual-{kind}")
    return _parse_datetime(extension.value_string) if extension else None


def transform_appointment(
    raw: Any,
    practitioner_id: str,
    client_id: str | None,
    session_number: int,
    existing_id: str | None = None,
) -> SessionRecord:
    fhir = _validate(FhirAppointment, "appointment", raw)
    if fhir.start is None or fhir.end is None:
        raise TransformError("appointment", fhir.id, f"Appointment {fhir.id} is missing start or end")

    return SessionRecord(
        id=existing_id or new_uuid(),
        halaxy_appointment_id=fhir.id,
        practitioner_id=practitioner_id,
        client_id=client_id,
        scheduled_start_time=_as_utc(fhir.start),
        scheduled_end_time=_as_utc(fhir.end),
        actual_start_time=_actual_time(fhir.extension, "start"),
        actual_end_time=_actual_time(fhir.extension, "end"),
        session_number=session_number,
        status=map_appointment_status(fhir.status).value,
        session_type=_session_type(fhir),
        notes=fhir.comment or fhir.description,
        fee=_fee(fhir.extension),
        fee_currency="AUD",
        is_paid=_is_paid(fhir.extension),
        last_synced_at=utcnow(),
    )


# -- slots -----------------------------------------------------------------


def _location_type(fhir: FhirSlot) -> str:
    if fhir.service_type:
        concept = fhir.service_type[0]
        coding = concept.coding[0] if concept.coding else None
        haystack = " ".join(
            value.lower()
            for value in (
                coding.code if coding else None,
                coding.display if coding else None,
                concept.text,
            )
            if value
        )
        if any(term in haystack for term in ("telehealth", "video", "online")):
            return "telehealth"
    return "in-person"


def transform_slot(raw: Any, practitioner_id: str, existing_id: str | None = None) -> SlotRecord:
    fhir = _validate(FhirSlot, "slot", raw)
    if fhir.start is None or fhir.end is None:
        raise TransformError("slot", fhir.id, f"Slot {fhir.id} is missing start or end")
    start, end = _as_utc(fhir.start), _as_utc(fhir.end)

    category = None
    if fhir.service_category:
        concept = fhir.service_category[0]
        category = concept.text or (concept.coding[0].display if concept.coding else None)

    schedule_reference = fhir.schedule.reference if fhir.schedule else None
    return SlotRecord(
        id=existing_id or new_uuid(),
        halaxy_slot_id=fhir.id,
        practitioner_id=practitioner_id,
        slot_start=start,
        slot_end=end,
        duration_minutes=round((end - start).total_seconds() / 60),
        status=fhir.status or "free",
        halaxy_schedule_id=extract_id_from_reference(schedule_reference),
        location_type=_location_type(fhir),
        service_category=category,
        is_bookable=fhir.status == "free",
        last_synced_at=utcnow(),
    )
