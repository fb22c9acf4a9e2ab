from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import httpx
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bloom.core.settings import Settings, settings as default_settings
from bloom.models.availability_slot import AvailabilitySlot
from bloom.models.base import utcnow
from bloom.models.client import Client
from bloom.models.practitioner import Practitioner
from bloom.models.sync_log import SyncLog, SyncLogStatus, SyncType
from bloom.models.therapy_session import SessionStatus, TherapySession
from bloom.services.halaxy.client import HalaxyClient
from bloom.services.halaxy.errors import (
    ConfigurationError,
    HalaxyError,
    TransformError,
    UpstreamApiError,
    UpstreamAuthError,
    describe_error,
)
from bloom.services.halaxy.transformers import (
    extract_id_from_reference,
    get_patient_id_from_appointment,
    get_practitioner_id_from_appointment,
    transform_appointment,
    transform_patient,
    transform_practitioner,
    transform_slot,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "placeholder.halaxy.local"
STALE_AFTER = timedelta(hours=1)
STATUS_LOG_WINDOW = 10
DEFAULT_SLOT_DAYS = 90

RECORD_ERRORS = (HalaxyError, SQLAlchemyError)


class UpsertOutcome(str, enum.Enum):
    created = "created"
    updated = "updated"
    unchanged = "unchanged"


@dataclass
class SyncError:
    entity_type: str
    entity_id: str | None
    message: str

    def as_dict(self) -> dict[str, object]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "message": self.message,
        }


@dataclass
class SyncResult:
    success: bool = True
    records_created: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    records_deleted: int = 0
    duration_ms: int = 0
    errors: list[SyncError] = field(default_factory=list)
    sync_log_id: str | None = None
    practitioner_id: str | None = None

    @property
    def records_processed(self) -> int:
        return (
            self.records_created
            + self.records_updated
            + self.records_unchanged
            + self.records_deleted
        )

    def count(self, outcome: UpsertOutcome) -> None:
        if outcome is UpsertOutcome.created:
            self.records_created += 1
        elif outcome is UpsertOutcome.updated:
            self.records_updated += 1
        else:
            self.records_unchanged += 1

    def add_error(self, entity_type: str, entity_id: str | None, error: BaseException | str) -> None:
        message = error if isinstance(error, str) else describe_error(error)
        logger.warning("Halaxy sync error for %s %s: %s", entity_type, entity_id, message)
        self.errors.append(SyncError(entity_type, entity_id, message))

    def as_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_unchanged": self.records_unchanged,
            "records_deleted": self.records_deleted,
            "duration_ms": self.duration_ms,
            "errors": [error.as_dict() for error in self.errors],
            "sync_log_id": self.sync_log_id,
        }


@dataclass(frozen=True)
class SyncStatus:
    last_full_sync: datetime | None
    last_incremental_sync: datetime | None
    status: str
    error_message: str | None = None


def is_fatal_error(error: BaseException) -> bool:
    """Errors that mean the upstream cannot be used at all for this pass."""
    if isinstance(error, (ConfigurationError, UpstreamAuthError, httpx.TransportError)):
        return True
    return isinstance(error, UpstreamApiError) and error.status_code in {401, 403}


class HalaxySyncService:
    def __init__(
        self,
        db: Session,
        client: HalaxyClient,
        app_settings: Settings | None = None,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.client = client
        self.settings = app_settings or default_settings
        self._now = now

    # -- full sync -----------------------------------------------------

    def full_sync(
        self,
        halaxy_practitioner_id: str,
        fhir_practitioner: dict[str, Any] | None = None,
        *,
        include_slots: bool = False,
    ) -> SyncResult:
        started = time.perf_counter()
        result = SyncResult()
        logger.info("Starting Halaxy full sync for practitioner %s", halaxy_practitioner_id)

        try:
            if fhir_practitioner is None:
                fhir_practitioner = self.client.get_practitioner(halaxy_practitioner_id)
            practitioner, _ = self.sync_practitioner(fhir_practitioner)
            self.db.commit()
        except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
            self.db.rollback()
            logger.error("Halaxy practitioner sync failed for %s: %s", halaxy_practitioner_id, exc)
            result.success = False
            result.add_error("practitioner", halaxy_practitioner_id, exc)
            result.duration_ms = _elapsed_ms(started)
            return result

        result.practitioner_id = practitioner.id
        log = self._start_log(SyncType.full, "all", practitioner.id, operation="full_sync")
        result.sync_log_id = log.id

        try:
            clients = self._sync_clients(practitioner, result)
            self._sync_sessions(practitioner, clients, result)
            if include_slots:
                self._sync_slots(practitioner, None, None, result)
            self._recount_client_sessions(practitioner.id)
        except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
            self.db.rollback()
            logger.error("Halaxy full sync aborted for %s: %s", halaxy_practitioner_id, exc)
            result.success = False
            result.add_error("all", halaxy_practitioner_id, exc)
            result.duration_ms = _elapsed_ms(started)
            self._finish_log(log.id, result, error=exc)
            return result

        result.duration_ms = _elapsed_ms(started)
        self._finish_log(log.id, result)
        logger.info(
            "Halaxy full sync for %s finished in %sms: %s records, %s errors",
            halaxy_practitioner_id,
            result.duration_ms,
            result.records_processed,
            len(result.errors),
        )
        return result

    def _fetch(
        self, entity_type: str, owner_id: str, fetch: Callable[[], list[dict[str, Any]]], result: SyncResult
    ) -> list[dict[str, Any]]:
        try:
            return fetch()
        except HalaxyError as exc:
            if is_fatal_error(exc):
                raise
            result.add_error(entity_type, owner_id, f"Could not fetch {entity_type}s: {describe_error(exc)}")
            return []

    def _sync_clients(self, practitioner: Practitioner, result: SyncResult) -> dict[str, Client]:
        halaxy_id = practitioner.halaxy_practitioner_id
        patients = self._fetch(
            "patient",
            halaxy_id,
            lambda: self.client.get_patients_by_practitioner(halaxy_id),
            result,
        )
        logger.info("Found %s Halaxy patients for %s", len(patients), halaxy_id)
        for raw in patients:
            try:
                _, outcome = self.sync_client(raw, practitioner.id)
            except RECORD_ERRORS as exc:
                result.add_error("patient", raw.get("id"), exc)
                continue
            result.count(outcome)
        self.db.commit()

        rows = self.db.scalars(select(Client).where(Client.practitioner_id == practitioner.id))
        return {row.halaxy_patient_id: row for row in rows}

    def _sync_sessions(
        self, practitioner: Practitioner, clients: dict[str, Client], result: SyncResult
    ) -> None:
        halaxy_id = practitioner.halaxy_practitioner_id
        now = self._now()
        window_start = now - timedelta(days=self.settings.halaxy_sync_days_past)
        window_end = now + timedelta(days=self.settings.halaxy_sync_days_future)
        appointments = self._fetch(
            "appointment",
            halaxy_id,
            lambda: self.client.get_appointments_by_practitioner(halaxy_id, window_start, window_end),
            result,
        )
        logger.info("Found %s Halaxy appointments for %s", len(appointments), halaxy_id)

        counters = self._completed_session_counts(practitioner.id)
        for raw in appointments:
            appointment_id = raw.get("id")
            try:
                patient_id = get_patient_id_from_appointment(raw)
                client = clients.get(patient_id) if patient_id else None
                if client is None:
                    logger.warning(
                        "Appointment %s has no known client (patient %s), storing unlinked",
                        appointment_id,
                        patient_id,
                    )
                    _, outcome = self.sync_session(raw, practitioner.id, None, 0)
                else:
                    candidate = counters.get(client.id, 0) + 1
                    _, outcome = self.sync_session(raw, practitioner.id, client.id, candidate)
                    if outcome is UpsertOutcome.created:
                        counters[client.id] = candidate
            except RECORD_ERRORS as exc:
                result.add_error("appointment", appointment_id, exc)
                continue
            result.count(outcome)
        self.db.commit()

    def _completed_session_counts(self, practitioner_id: str) -> dict[str, int]:
        rows = self.db.execute(
            select(TherapySession.client_id, func.count())
            .where(
                TherapySession.practitioner_id == practitioner_id,
                TherapySession.client_id.is_not(None),
                TherapySession.status == SessionStatus.completed.value,
            )
            .group_by(TherapySession.client_id)
        ).all()
        return {client_id: count for client_id, count in rows}

    def _recount_client_sessions(self, practitioner_id: str) -> None:
        used = self._completed_session_counts(practitioner_id)
        firsts = dict(
            self.db.execute(
                select(TherapySession.client_id, func.min(TherapySession.scheduled_start_time))
                .where(
                    TherapySession.practitioner_id == practitioner_id,
                    TherapySession.client_id.is_not(None),
                    TherapySession.status != SessionStatus.cancelled.value,
                )
                .group_by(TherapySession.client_id)
            ).all()
        )
        for client in self.db.scalars(select(Client).where(Client.practitioner_id == practitioner_id)):
            updates: dict[str, object] = {"mhcp_used_sessions": used.get(client.id, 0)}
            first = firsts.get(client.id)
            if first is not None:
                updates["first_session_date"] = _ensure_timezone(first).date()
            _apply_updates(client, updates)
        self.db.commit()

    # -- per-record upserts --------------------------------------------

    def sync_practitioner(self, raw: dict[str, Any]) -> tuple[Practitioner, UpsertOutcome]:
        halaxy_id = _raw_id(raw)
        with self.db.begin_nested():
            existing = self._find_practitioner(halaxy_id)
            record = transform_practitioner(raw, existing.id if existing else None)
            if not record.email:
                record.email = f"{record.halaxy_practitioner_id}@{PLACEHOLDER_EMAIL_DOMAIN}"
            return self._save(Practitioner, existing, record.values())

    def sync_client(self, raw: dict[str, Any], practitioner_id: str) -> tuple[Client, UpsertOutcome]:
        halaxy_id = _raw_id(raw)
        with self.db.begin_nested():
            existing = self.db.scalar(
                select(Client).where(
                    Client.practitioner_id == practitioner_id,
                    Client.halaxy_patient_id == halaxy_id,
                )
            )
            record = transform_patient(
                raw,
                practitioner_id,
                existing.id if existing else None,
                self._completed_session_count(existing.id) if existing else 0,
            )
            return self._save(Client, existing, record.values())

    def sync_session(
        self,
        raw: dict[str, Any],
        practitioner_id: str,
        client_id: str | None = None,
        session_number: int | None = None,
    ) -> tuple[TherapySession, UpsertOutcome]:
        halaxy_id = _raw_id(raw)
        with self.db.begin_nested():
            existing = self.db.scalar(
                select(TherapySession).where(TherapySession.halaxy_appointment_id == halaxy_id)
            )
            if existing is not None:
                number = existing.session_number
                client_id = client_id or existing.client_id
            elif session_number is not None:
                number = session_number
            else:
                number = self._next_session_number(client_id)
            record = transform_appointment(
                raw, practitioner_id, client_id, number, existing.id if existing else None
            )
            return self._save(TherapySession, existing, record.values())

    def _next_session_number(self, client_id: str | None) -> int:
        if not client_id:
            return 0
        return self._completed_session_count(client_id) + 1

    def _completed_session_count(self, client_id: str) -> int:
        completed = self.db.scalar(
            select(func.count())
            .select_from(TherapySession)
            .where(
                TherapySession.client_id == client_id,
                TherapySession.status == SessionStatus.completed.value,
            )
        )
        return completed or 0

    def _save(self, model, existing, values: dict[str, Any]):
        synced_at = values.pop("last_synced_at")
        if existing is not None:
            values.pop("id")
            changed = _apply_updates(existing, values)
            existing.last_synced_at = synced_at
            self.db.flush()
            return existing, UpsertOutcome.updated if changed else UpsertOutcome.unchanged
        row = model(last_synced_at=synced_at, **values)
        self.db.add(row)
        self.db.flush()
        return row, UpsertOutcome.created

    def _find_practitioner(self, halaxy_id: str | None) -> Practitioner | None:
        if not halaxy_id:
            return None
        return self.db.scalar(
            select(Practitioner).where(Practitioner.halaxy_practitioner_id == halaxy_id)
        )

    # -- availability slots --------------------------------------------

    def sync_availability_slots(
        self,
        practitioner_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SyncResult:
        started = time.perf_counter()
        result = SyncResult(practitioner_id=practitioner_id)
        practitioner = self.db.get(Practitioner, practitioner_id)
        if practitioner is None:
            result.success = False
            result.add_error("practitioner", practitioner_id, "Practitioner not found")
            return result
        try:
            self._sync_slots(practitioner, start, end, result)
        except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
            self.db.rollback()
            result.success = False
            result.add_error("slot", practitioner.halaxy_practitioner_id, exc)
        result.duration_ms = _elapsed_ms(started)
        return result

    def _sync_slots(
        self,
        practitioner: Practitioner,
        start: datetime | None,
        end: datetime | None,
        result: SyncResult,
    ) -> None:
        now = self._now()
        start = start or now
        end = end or now + timedelta(days=DEFAULT_SLOT_DAYS)

        removed = self.db.execute(
            delete(AvailabilitySlot).where(
                AvailabilitySlot.practitioner_id == practitioner.id,
                AvailabilitySlot.slot_start < now,
            )
        )
        if removed.rowcount:
            logger.info("Removed %s past availability slots", removed.rowcount)

        halaxy_id = practitioner.halaxy_practitioner_id
        slots = self._fetch(
            "slot",
            halaxy_id,
            lambda: self.client.get_available_slots(halaxy_id, start, end),
            result,
        )
        for raw in slots:
            try:
                with self.db.begin_nested():
                    existing = self.db.scalar(
                        select(AvailabilitySlot).where(
                            AvailabilitySlot.halaxy_slot_id == _raw_id(raw)
                        )
                    )
                    record = transform_slot(raw, practitioner.id, existing.id if existing else None)
                    _, outcome = self._save(AvailabilitySlot, existing, record.values())
            except RECORD_ERRORS as exc:
                result.add_error("slot", raw.get("id"), exc)
                continue
            result.count(outcome)
        self.db.commit()

    # -- webhook events ------------------------------------------------

    def incremental_sync(self, event: str, resource: dict[str, Any]) -> SyncResult:
        started = time.perf_counter()
        result = SyncResult()
        entity_type = event.split(".", 1)[0]
        entity_id = _raw_id(resource)
        log = self._start_log(SyncType.webhook, entity_type, None, entity_id=entity_id, operation=event)
        result.sync_log_id = log.id
        logger.info("Processing Halaxy webhook event %s for %s", event, entity_id)

        handler = {
            "appointment.created": self._handle_appointment_change,
            "appointment.updated": self._handle_appointment_change,
            "appointment.cancelled": self._handle_appointment_cancel,
            "appointment.deleted": self._handle_appointment_cancel,
            "patient.created": self._handle_patient_change,
            "patient.updated": self._handle_patient_change,
            "patient.deleted": self._handle_patient_delete,
            "practitioner.updated": self._handle_practitioner_change,
        }.get(event)

        try:
            if handler is None:
                logger.info("Unhandled Halaxy webhook event: %s", event)
            else:
                result.practitioner_id = handler(resource, result)
            self.db.commit()
        except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
            self.db.rollback()
            result.success = False
            result.add_error(entity_type, entity_id, exc)
            result.duration_ms = _elapsed_ms(started)
            self._finish_log(log.id, result, error=exc)
            return result

        result.duration_ms = _elapsed_ms(started)
        self._finish_log(log.id, result)
        return result

    def _ensure_practitioner(self, halaxy_id: str) -> Practitioner:
        practitioner = self._find_practitioner(halaxy_id)
        if practitioner is None:
            practitioner, _ = self.sync_practitioner(self.client.get_practitioner(halaxy_id))
        return practitioner

    def _handle_appointment_change(self, resource: dict[str, Any], result: SyncResult) -> str:
        patient_id = get_patient_id_from_appointment(resource)
        halaxy_practitioner_id = get_practitioner_id_from_appointment(resource)
        if not patient_id or not halaxy_practitioner_id:
            raise TransformError(
                "appointment",
                _raw_id(resource),
                "Missing patient or practitioner reference in appointment",
            )
        practitioner = self._ensure_practitioner(halaxy_practitioner_id)
        client = self.db.scalar(
            select(Client).where(
                Client.practitioner_id == practitioner.id,
                Client.halaxy_patient_id == patient_id,
            )
        )
        if client is None:
            client, _ = self.sync_client(self.client.get_patient(patient_id), practitioner.id)
        _, outcome = self.sync_session(resource, practitioner.id, client.id)
        result.count(outcome)
        self._recount_client_sessions(practitioner.id)
        return practitioner.id

    def _handle_appointment_cancel(self, resource: dict[str, Any], result: SyncResult) -> str | None:
        session = self.db.scalar(
            select(TherapySession).where(TherapySession.halaxy_appointment_id == _raw_id(resource))
        )
        if session is None:
            return None
        if session.status != SessionStatus.cancelled.value:
            session.status = SessionStatus.cancelled.value
            session.last_synced_at = self._now()
            result.records_deleted += 1
        return session.practitioner_id

    def _handle_patient_change(self, resource: dict[str, Any], result: SyncResult) -> str:
        patient_id = _raw_id(resource)
        existing = self.db.scalar(select(Client).where(Client.halaxy_patient_id == patient_id))
        practitioner_id = existing.practitioner_id if existing else None
        if practitioner_id is None:
            for general in resource.get("generalPractitioner") or []:
                reference = extract_id_from_reference((general or {}).get("reference"))
                practitioner = self._find_practitioner(reference)
                if practitioner is not None:
                    practitioner_id = practitioner.id
                    break
        if practitioner_id is None:
            raise TransformError("patient", patient_id, f"Cannot find practitioner for patient {patient_id}")
        _, outcome = self.sync_client(resource, practitioner_id)
        result.count(outcome)
        return practitioner_id

    def _handle_patient_delete(self, resource: dict[str, Any], result: SyncResult) -> str | None:
        practitioner_id = None
        for client in self.db.scalars(select(Client).where(Client.halaxy_patient_id == _raw_id(resource))):
            practitioner_id = client.practitioner_id
            if client.is_active:
                client.is_active = False
                client.last_synced_at = self._now()
                result.records_deleted += 1
        return practitioner_id

    def _handle_practitioner_change(self, resource: dict[str, Any], result: SyncResult) -> str:
        halaxy_id = _raw_id(resource)
        if not halaxy_id:
            raise TransformError("practitioner", None, "Practitioner event without an id")
        practitioner, outcome = self.sync_practitioner(self.client.get_practitioner(halaxy_id))
        result.count(outcome)
        return practitioner.id

    # -- sync log and status -------------------------------------------

    def _start_log(
        self,
        sync_type: SyncType,
        entity_type: str,
        practitioner_id: str | None,
        *,
        entity_id: str | None = None,
        operation: str = "sync",
    ) -> SyncLog:
        log = SyncLog(
            sync_type=sync_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            status=SyncLogStatus.in_progress.value,
            started_at=self._now(),
            practitioner_id=practitioner_id,
        )
        self.db.add(log)
        self.db.commit()
        return log

    def _finish_log(
        self, log_id: str, result: SyncResult, error: BaseException | None = None
    ) -> None:
        log = self.db.get(SyncLog, log_id)
        if log is None:
            return
        log.completed_at = self._now()
        log.records_processed = result.records_processed
        log.practitioner_id = log.practitioner_id or result.practitioner_id
        if error is not None or not result.success:
            log.status = SyncLogStatus.error.value
            log.error_message = describe_error(error) if error else None
        else:
            log.status = SyncLogStatus.success.value
            if result.errors:
                log.error_message = "; ".join(e.message for e in result.errors[:5])
        self.db.commit()

    def get_sync_status(self, practitioner_id: str) -> SyncStatus:
        logs = self.db.scalars(
            select(SyncLog)
            .where(SyncLog.practitioner_id == practitioner_id)
            .order_by(SyncLog.started_at.desc())
            .limit(STATUS_LOG_WINDOW)
        ).all()

        last_full = _latest(logs, SyncType.full, SyncLogStatus.success)
        last_incremental = _latest(logs, SyncType.webhook, SyncLogStatus.success)
        last_error = next((log for log in logs if log.status == SyncLogStatus.error.value), None)

        last_full_at = _ensure_timezone(last_full.completed_at) if last_full else None
        error_at = _ensure_timezone(last_error.started_at) if last_error else None

        if error_at is not None and (last_full_at is None or error_at > last_full_at):
            return SyncStatus(
                last_full_sync=last_full_at,
                last_incremental_sync=_completed_at(last_incremental),
                status="error",
                error_message=last_error.error_message,
            )
        if last_full_at is None or self._now() - last_full_at > STALE_AFTER:
            status = "stale"
        else:
            status = "healthy"
        return SyncStatus(
            last_full_sync=last_full_at,
            last_incremental_sync=_completed_at(last_incremental),
            status=status,
        )


def _latest(logs: list[SyncLog], sync_type: SyncType, status: SyncLogStatus) -> SyncLog | None:
    for log in logs:
        if log.sync_type == sync_type.value and log.status == status.value:
            return log
    return None


def _completed_at(log: SyncLog | None) -> datetime | None:
    if log is None:
        return None
    return _ensure_timezone(log.completed_at or log.started_at)


def _raw_id(raw: Any) -> str | None:
    if isinstance(raw, dict):
        value = raw.get("id")
        return value if isinstance(value, str) else None
    return None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _ensure_timezone(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _comparable(value: object) -> object:
    if isinstance(value, datetime):
        return _ensure_timezone(value)
    if isinstance(value, Decimal):
        return value.quantize(Decimal("0.01"))
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _apply_updates(model, updates: dict[str, object]) -> bool:
    changed = False
    for field_name, value in updates.items():
        if _comparable(getattr(model, field_name)) != _comparable(value):
            setattr(model, field_name, value)
            changed = True
    return changed
