"""HTTP client for the Halaxy FHIR-R4 API.

Every request goes through the shared rate limiter and the token manager;
a 401 invalidates the cached token and the request is replayed exactly once.
Collection reads follow Bundle ``next`` links and drop the sentinel entries
Halaxy embeds in search results.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

import httpx
from pydantic import ValidationError

from bloom.core.settings import HalaxyConfig, Settings, settings
from bloom.schemas.fhir import Bundle
from bloom.schemas.halaxy import AppointmentInput, PatientInput
from bloom.services.halaxy.errors import InputValidationError, UpstreamApiError
from bloom.services.halaxy.token_manager import TokenManager
from bloom.services.rate_limit import RequestRateLimiter

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
MERGE_PATCH_JSON = "application/merge-patch+json"
SENTINEL_IDS = {"warning", "error"}
PATIENT_ID_MIN_LENGTH = 4
DEFAULT_APPOINTMENT_DESCRIPTION = "Appointment booked via website"

_PRACTITIONER_PREFIX = re.compile(r"^(PR|EP)-")

QueryParams = Mapping[str, Any] | Sequence[tuple[str, Any]]


@dataclass
class HalaxySession:
    http: httpx.Client
    token_manager: TokenManager
    rate_limiter: RequestRateLimiter

    def close(self) -> None:
        self.http.close()


def create_halaxy_session(
    config: HalaxyConfig,
    *,
    transport: httpx.BaseTransport | None = None,
    clock: Callable[[], float] = time.time,
    monotonic: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> HalaxySession:
    http = httpx.Client(transport=transport, timeout=config.request_timeout_seconds)
    return HalaxySession(
        http=http,
        token_manager=TokenManager(config, http, clock=clock),
        rate_limiter=RequestRateLimiter(
            max_requests=config.max_requests_per_minute, clock=monotonic, sleep=sleep
        ),
    )


def is_valid_resource_id(value: Any, min_length: int = 1) -> bool:
    if not isinstance(value, str) or not value:
        return False
    if value in SENTINEL_IDS or value.startswith("outcome"):
        return False
    return len(value) >= min_length


def normalize_phone(phone: str) -> str:
    """Normalise an Australian phone number to +61 form."""
    compact = re.sub(r"\s+", "", phone)
    if compact.startswith("0"):
        return "+61" + compact[1:]
    if not compact.startswith("+"):
        return "+61" + compact
    return compact


def strip_practitioner_prefix(practitioner_id: str) -> str:
    return _PRACTITIONER_PREFIX.sub("", practitioner_id)


def valid_resources(
    entries: Iterable[Any], *, min_length: int = 1, context: str = ""
) -> list[dict[str, Any]]:
    resources: list[dict[str, Any]] = []
    skipped = 0
    for resource in entries:
        if not isinstance(resource, dict):
            skipped += 1
            continue
        if resource.get("resourceType") == "OperationOutcome":
            skipped += 1
            continue
        if not is_valid_resource_id(resource.get("id"), min_length):
            skipped += 1
            continue
        resources.append(resource)
    if skipped:
        logger.warning("Skipped %s invalid Halaxy entries %s", skipped, context)
    return resources


def _format_instant(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _format_day(value: date | datetime) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    return value.isoformat()


class HalaxyClient:
    def __init__(self, config: HalaxyConfig, session: HalaxySession | None = None) -> None:
        self.config = config
        self.session = session or create_halaxy_session(config)

    @property
    def token_manager(self) -> TokenManager:
        return self.session.token_manager

    def close(self) -> None:
        self.session.close()

    # -- transport -----------------------------------------------------

    def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: QueryParams | None = None,
        json_body: Any = None,
        content_type: str = FHIR_JSON,
    ) -> Any:
        url = self._build_url(endpoint, params)
        # Path only: query strings can carry patient email addresses.
        logger.info("Halaxy request: %s %s", method, httpx.URL(url).path)

        def send(token: str) -> httpx.Response:
            self.session.rate_limiter.acquire()
            headers = {"Authorization": f"Bearer {token}", "Accept": FHIR_JSON}
            if json_body is not None:
                headers["Content-Type"] = content_type
            return self.session.http.request(
                method,
                url,
                json=json_body,
                headers=headers,
                timeout=self.config.request_timeout_seconds,
            )

        response = self._execute_with_auth_retry(send)
        if not response.content:
            return None
        return response.json()

    def _execute_with_auth_retry(
        self, send: Callable[[str], httpx.Response], max_auth_retries: int = 1
    ) -> httpx.Response:
        response = send(self.token_manager.get_access_token())
        retries = 0
        while response.status_code == 401 and retries < max_auth_retries:
            retries += 1
            logger.warning("Halaxy returned 401, refreshing token and retrying")
            self.token_manager.invalidate_token()
            response = send(self.token_manager.get_access_token())

        if not response.is_success:
            error = UpstreamApiError(
                f"Halaxy API error: {response.status_code} {response.reason_phrase}",
                response.status_code,
                response.text,
            )
            logger.error("%s", error.describe())
            raise error
        return response

    def _build_url(self, endpoint: str, params: QueryParams | None = None) -> str:
        if endpoint.startswith(("http://", "https://")):
            url = httpx.URL(endpoint)
        else:
            url = httpx.URL(self.config.api_base_url.rstrip("/") + endpoint)
        if params:
            items = params.items() if isinstance(params, Mapping) else params
            url = url.copy_merge_params([(key, str(value)) for key, value in items])
        return str(url)

    # -- bundles -------------------------------------------------------

    def get_all_pages(
        self, endpoint: str, params: QueryParams | None = None, *, min_length: int = 1
    ) -> list[dict[str, Any]]:
        url: str | None = self._build_url(endpoint, params)
        resources: list[dict[str, Any]] = []
        pages = 0
        while url:
            if pages >= self.config.max_pages:
                logger.warning(
                    "Halaxy pagination stopped after %s pages for %s", pages, endpoint
                )
                break
            bundle = self._parse_bundle(self.request(url), endpoint)
            pages += 1
            resources.extend(
                valid_resources(
                    (entry.resource for entry in bundle.entry),
                    min_length=min_length,
                    context=f"from {endpoint}",
                )
            )
            url = bundle.next_url()
        return resources

    def get_first_page(
        self, endpoint: str, params: QueryParams | None = None, *, min_length: int = 1
    ) -> list[dict[str, Any]]:
        bundle = self._parse_bundle(self.request(endpoint, params=params), endpoint)
        return valid_resources(
            (entry.resource for entry in bundle.entry),
            min_length=min_length,
            context=f"from {endpoint}",
        )

    def _parse_bundle(self, payload: Any, endpoint: str) -> Bundle:
        try:
            return Bundle.model_validate(payload or {})
        except ValidationError as exc:
            raise UpstreamApiError(
                f"Malformed Bundle returned for {endpoint}", 200, str(exc)
            ) from exc

    # -- practitioners -------------------------------------------------

    def get_practitioner(self, practitioner_id: str) -> dict[str, Any]:
        return self.request(f"/Practitioner/{practitioner_id}")

    def get_all_practitioners(self) -> list[dict[str, Any]]:
        return self.get_all_pages("/Practitioner", {"active": "true"})

    def find_practitioner_by_email(self, email: str) -> dict[str, Any] | None:
        matches = self.get_first_page("/Practitioner", {"email": email, "_count": 1})
        return matches[0] if matches else None

    def get_practitioner_role(self, role_id: str) -> dict[str, Any]:
        return self.request(f"/PractitionerRole/{role_id}")

    def get_practitioner_roles_by_practitioner(
        self, practitioner_id: str
    ) -> list[dict[str, Any]]:
        return self.get_all_pages(
            "/PractitionerRole", {"practitioner": f"Practitioner/{practitioner_id}"}
        )

    # -- patients ------------------------------------------------------

    def get_patient(self, patient_id: str) -> dict[str, Any]:
        return self.request(f"/Patient/{patient_id}")

    def get_patients_by_practitioner(self, practitioner_id: str) -> list[dict[str, Any]]:
        reference = f"Practitioner/{strip_practitioner_prefix(practitioner_id)}"
        return self.get_all_pages(
            "/Patient", {"general-practitioner": reference, "active": "true"}
        )

    def get_all_patients(self) -> list[dict[str, Any]]:
        return self.get_all_pages("/Patient", {"active": "true"})

    def export_patient_ids(self) -> list[str]:
        payload = self.request("/Patient/$export-ids") or {}
        ids: list[str] = []
        for parameter in payload.get("parameter") or []:
            reference = (parameter.get("valueReference") or {}).get("reference")
            if reference:
                ids.append(reference.rsplit("/", 1)[-1])
        return ids

    def create_or_find_patient(self, patient: PatientInput) -> dict[str, Any]:
        try:
            existing = self.get_first_page(
                "/Patient",
                {"email": patient.email, "_count": 1},
                min_length=PATIENT_ID_MIN_LENGTH,
            )
        except (UpstreamApiError, httpx.HTTPError):
            logger.warning("Halaxy patient lookup failed, creating a new patient", exc_info=True)
            existing = []
        if existing:
            logger.info("Found existing Halaxy patient %s", existing[0]["id"])
            return existing[0]

        telecom: list[dict[str, str]] = [
            {"system": "email", "value": patient.email, "use": "home"}
        ]
        if patient.phone:
            telecom.append(
                {"system": "sms", "value": normalize_phone(patient.phone), "use": "mobile"}
            )
        body: dict[str, Any] = {
            "resourceType": "Patient",
            "active": True,
            "name": [
                {"use": "official", "family": patient.last_name, "given": [patient.first_name]}
            ],
            "telecom": telecom,
        }
        if patient.date_of_birth:
            body["birthDate"] = patient.date_of_birth.isoformat()
        if patient.gender:
            body["gender"] = patient.gender

        created = self.request("/Patient", method="POST", json_body=body) or {}
        patient_id = created.get("id")
        if not is_valid_resource_id(patient_id, PATIENT_ID_MIN_LENGTH):
            raise UpstreamApiError(
                f"Halaxy returned an invalid patient id: {patient_id!r}", 200, str(created)
            )
        logger.info("Created Halaxy patient %s", patient_id)
        return created

    # -- appointments --------------------------------------------------

    def get_appointment(self, appointment_id: str) -> dict[str, Any]:
        return self.request(f"/Appointment/{appointment_id}")

    def get_appointments_by_practitioner(
        self,
        practitioner_id: str,
        start: date | datetime,
        end: date | datetime,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        # Halaxy resolves appointment actors by the full PractitionerRole URL.
        params: list[tuple[str, Any]] = [
            ("actor", self._reference_url("PractitionerRole", practitioner_id)),
            ("date", f"ge{_format_day(start)}"),
            ("date", f"lt{_format_day(end)}"),
        ]
        if statuses:
            params.append(("status", ",".join(statuses)))
        return self.get_all_pages("/Appointment", params)

    def get_appointments_by_patient(self, patient_id: str) -> list[dict[str, Any]]:
        return self.get_all_pages("/Appointment", {"actor": f"Patient/{patient_id}"})

    def create_appointment(self, appointment: AppointmentInput) -> dict[str, Any]:
        if not is_valid_resource_id(appointment.patient_id, PATIENT_ID_MIN_LENGTH):
            raise InputValidationError(f"Invalid patient ID: {appointment.patient_id!r}")
        if appointment.end <= appointment.start:
            raise InputValidationError("Appointment end must be after start")
        role_id = appointment.practitioner_role_id or self.config.practitioner_role_id
        if not role_id:
            raise InputValidationError(
                "No practitioner role configured. Set HALAXY_PRACTITIONER_ROLE_ID."
            )
        service_id = appointment.healthcare_service_id or self.config.healthcare_service_id
        if not service_id:
            raise InputValidationError(
                "No healthcare service configured. Set HALAXY_HEALTHCARE_SERVICE_ID."
            )

        minutes = round((appointment.end - appointment.start).total_seconds() / 60)
        appt_resource: dict[str, Any] = {
            "resourceType": "Appointment",
            "status": "booked",
            "start": _format_instant(appointment.start),
            "end": _format_instant(appointment.end),
            "minutesDuration": minutes,
            "description": appointment.description or DEFAULT_APPOINTMENT_DESCRIPTION,
            "participant": [
                {
                    "actor": {
                        "reference": self._reference_url("PractitionerRole", role_id),
                        "type": "PractitionerRole",
                    },
                    "status": "accepted",
                }
            ],
        }
        if appointment.service_type:
            appt_resource["serviceType"] = [{"text": appointment.service_type}]

        body = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "appt-resource", "resource": appt_resource},
                {
                    "name": "patient-id",
                    "valueReference": {
                        "reference": self._reference_url("Patient", appointment.patient_id),
                        "type": "Patient",
                    },
                },
                {
                    "name": "healthcare-service-id",
                    "valueReference": {
                        "reference": self._reference_url("HealthcareService", service_id),
                        "type": "HealthcareService",
                    },
                },
                {"name": "location-type", "valueCode": appointment.location_type},
                {"name": "status", "valueCode": "booked"},
            ],
        }
        created = self.request("/Appointment/$book", method="POST", json_body=body) or {}
        logger.info("Booked Halaxy appointment %s", created.get("id"))
        return created

    def cancel_appointment(self, appointment_id: str, reason: str | None = None) -> Any:
        body: dict[str, Any] = {"status": "cancelled"}
        if reason:
            body["cancelationReason"] = {"text": reason}
        return self.request(
            f"/Appointment/{appointment_id}",
            method="PATCH",
            json_body=body,
            content_type=MERGE_PATCH_JSON,
        )

    def find_available_appointments(
        self,
        start: datetime,
        end: datetime,
        duration_minutes: int,
        *,
        practitioner_id: str | None = None,
        practitioner_role_id: str | None = None,
        organization_id: str | None = None,
        apply_buffer_time: bool = False,
        emergency: bool = False,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "start": _format_instant(start),
            "end": _format_instant(end),
            "duration": duration_minutes,
        }
        if practitioner_id:
            params["practitioner"] = practitioner_id
        if practitioner_role_id:
            params["practitioner-role"] = practitioner_role_id
        organization = organization_id or self.config.organization_id
        if organization:
            params["organization"] = organization
        if apply_buffer_time:
            params["apply-buffer-time"] = "true"
        if emergency:
            params["emergency"] = "true"
        return self.get_first_page("/Appointment/$find", params)

    # -- schedules and slots -------------------------------------------

    def get_schedule(self, schedule_id: str) -> dict[str, Any]:
        return self.request(f"/Schedule/{schedule_id}")

    def get_schedules_by_practitioner(self, practitioner_id: str) -> list[dict[str, Any]]:
        return self.get_all_pages("/Schedule", {"actor": f"Practitioner/{practitioner_id}"})

    def get_slot(self, slot_id: str) -> dict[str, Any]:
        return self.request(f"/Slot/{slot_id}")

    def get_available_slots(
        self, practitioner_id: str, start: datetime, end: datetime, status: str = "free"
    ) -> list[dict[str, Any]]:
        params = [
            ("practitioner", f"Practitioner/{practitioner_id}"),
            ("start", f"ge{_format_instant(start)}"),
            ("end", f"le{_format_instant(end)}"),
            ("status", status),
        ]
        return self.get_all_pages("/Slot", params)

    def _reference_url(self, resource_type: str, resource_id: str) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/{resource_type}/{resource_id}"


_client: HalaxyClient | None = None


def get_halaxy_client(app_settings: Settings | None = None) -> HalaxyClient:
    global _client
    if _client is None:
        _client = HalaxyClient((app_settings or settings).halaxy_config())
    return _client


def reset_halaxy_client() -> None:
    global _client
    if _client is not None:
        _client.close()
    _client = None
