import json
from datetime import date, datetime, timezone

import httpx
import pytest

from bloom.schemas.halaxy import AppointmentInput, PatientInput
from bloom.services.halaxy.client import (
    is_valid_resource_id,
    normalize_phone,
    strip_practitioner_prefix,
)
from bloom.services.halaxy.errors import InputValidationError, UpstreamApiError
from halaxy_fakes import BASE_URL, bundle, make_config


def test_normalize_phone():
    assert normalize_phone("0412 345 678") == "+61412345678"
    assert normalize_phone("+61412345678") == "+61412345678"
    assert normalize_phone("412345678") == "+61412345678"


def test_is_valid_resource_id():
    for invalid in (None, "", "warning", "error", "outcome-1", 42):
        assert is_valid_resource_id(invalid) is False
    assert is_valid_resource_id("pat-123") is True
    assert is_valid_resource_id("123", min_length=4) is False
    assert is_valid_resource_id("1234", min_length=4) is True


def test_strip_practitioner_prefix():
    assert strip_practitioner_prefix("PR-1001") == "1001"
    assert strip_practitioner_prefix("EP-77") == "77"
    assert strip_practitioner_prefix("1001") == "1001"


def test_request_sends_bearer_token_and_fhir_headers(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Practitioner/PR-1", {"resourceType": "Practitioner", "id": "PR-1"})

    assert halaxy_client.get_practitioner("PR-1")["id"] == "PR-1"

    request = fake_halaxy.calls("GET", "/Practitioner/PR-1")[0]
    assert request.headers["authorization"] == "Bearer token-1"
    assert request.headers["accept"] == "application/fhir+json"


def test_401_then_200_retries_once_with_fresh_token(fake_halaxy, halaxy_client):
    fake_halaxy.add(
        "GET",
        "/Patient/pat-1",
        httpx.Response(401, text="expired"),
        {"resourceType": "Patient", "id": "pat-1"},
    )

    assert halaxy_client.get_patient("pat-1")["id"] == "pat-1"

    calls = fake_halaxy.calls("GET", "/Patient/pat-1")
    assert len(calls) == 2
    assert calls[0].headers["authorization"] == "Bearer token-1"
    assert calls[1].headers["authorization"] == "Bearer token-2"
    assert len(fake_halaxy.token_requests) == 2


def test_401_twice_surfaces_upstream_error_without_third_attempt(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Patient/pat-1", httpx.Response(401, text="still expired"))

    with pytest.raises(UpstreamApiError) as excinfo:
        halaxy_client.get_patient("pat-1")

    assert excinfo.value.status_code == 401
    assert excinfo.value.response_body == "still expired"
    assert len(fake_halaxy.calls("GET", "/Patient/pat-1")) == 2


def test_other_errors_are_not_retried(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Appointment/appt-1", httpx.Response(500, text="boom"))

    with pytest.raises(UpstreamApiError) as excinfo:
        halaxy_client.get_appointment("appt-1")

    assert excinfo.value.status_code == 500
    assert "boom" in excinfo.value.describe()
    assert len(fake_halaxy.calls("GET", "/Appointment/appt-1")) == 1


def test_get_all_pages_filters_sentinel_entries(fake_halaxy, halaxy_client):
    fake_halaxy.add(
        "GET",
        "/Patient",
        bundle(
            {"id": "warning"},
            {"id": "pat-123"},
            {"id": "error"},
            {"id": "outcome-x"},
            {"id": ""},
            {"resourceType": "Patient"},
        ),
    )

    resources = halaxy_client.get_all_pages("/Patient")

    assert [resource["id"] for resource in resources] == ["pat-123"]


def test_get_all_pages_follows_next_links_in_order(fake_halaxy, halaxy_client):
    def pages(request: httpx.Request) -> httpx.Response:
        page = request.url.params.get("page", "1")
        if page == "1":
            payload = bundle({"id": "a-1"}, {"id": "a-2"}, next_url=f"{BASE_URL}/Appointment?page=2")
        elif page == "2":
            payload = bundle({"id": "a-3"}, next_url=f"{BASE_URL}/Appointment?page=3")
        else:
            payload = bundle({"id": "a-4"})
        return httpx.Response(200, json=payload)

    fake_halaxy.add("GET", "/Appointment", pages)

    resources = halaxy_client.get_all_pages("/Appointment", {"page": 1})

    assert [resource["id"] for resource in resources] == ["a-1", "a-2", "a-3", "a-4"]
    assert len(fake_halaxy.calls("GET", "/Appointment")) == 3


def test_get_all_pages_stops_at_page_cap(fake_halaxy, make_halaxy_client):
    client = make_halaxy_client(make_config(max_pages=2))
    fake_halaxy.add(
        "GET",
        "/Patient",
        bundle({"id": "pat-1"}, next_url=f"{BASE_URL}/Patient?page=again"),
    )

    resources = client.get_all_pages("/Patient")

    assert len(resources) == 2
    assert len(fake_halaxy.calls("GET", "/Patient")) == 2


def test_patients_by_practitioner_query(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Patient", bundle({"id": "pat-1"}))

    halaxy_client.get_patients_by_practitioner("PR-1001")

    params = fake_halaxy.calls("GET", "/Patient")[0].url.params
    assert params["general-practitioner"] == "Practitioner/1001"
    assert params["active"] == "true"


def test_appointments_by_practitioner_date_filters(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Appointment", bundle())

    halaxy_client.get_appointments_by_practitioner(
        "PR-1001",
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 3, 31, tzinfo=timezone.utc),
        statuses=["booked", "fulfilled"],
    )

    params = fake_halaxy.calls("GET", "/Appointment")[0].url.params
    assert params["actor"] == f"{BASE_URL}/PractitionerRole/PR-1001"
    assert params.get_list("date") == ["ge2024-01-01", "lt2024-03-31"]
    assert params["status"] == "booked,fulfilled"


def test_available_slots_use_ge_and_le_prefixes(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Slot", bundle({"id": "slot-1"}))

    halaxy_client.get_available_slots(
        "PR-1001",
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 1, 8, tzinfo=timezone.utc),
    )

    params = fake_halaxy.calls("GET", "/Slot")[0].url.params
    assert params["practitioner"] == "Practitioner/PR-1001"
    assert params["start"] == "ge2024-01-01T00:00:00Z"
    assert params["end"] == "le2024-01-08T00:00:00Z"
    assert params["status"] == "free"


def test_export_patient_ids(fake_halaxy, halaxy_client):
    fake_halaxy.add(
        "GET",
        "/Patient/$export-ids",
        {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "patient", "valueReference": {"reference": "Patient/1001"}},
                {"name": "patient", "valueReference": {"reference": "Patient/1002"}},
                {"name": "other"},
            ],
        },
    )

    assert halaxy_client.export_patient_ids() == ["1001", "1002"]


def test_create_or_find_patient_returns_existing_match(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Patient", bundle({"id": "warning"}, {"id": "pat-5555"}))

    patient = halaxy_client.create_or_find_patient(
        PatientInput(first_name="Sam", last_name="Taylor", email="sam@example.com")
    )

    assert patient["id"] == "pat-5555"
    assert fake_halaxy.calls("POST", "/Patient") == []
    params = fake_halaxy.calls("GET", "/Patient")[0].url.params
    assert params["email"] == "sam@example.com"
    assert params["_count"] == "1"


def test_create_or_find_patient_creates_when_lookup_fails(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Patient", httpx.Response(500, text="search down"))
    fake_halaxy.add("POST", "/Patient", {"resourceType": "Patient", "id": "pat-9001"})

    patient = halaxy_client.create_or_find_patient(
        PatientInput(
            first_name="Sam",
            last_name="Taylor",
            email="sam@example.com",
            phone="0412 345 678",
            date_of_birth=date(1990, 4, 12),
            gender="female",
        )
    )

    assert patient["id"] == "pat-9001"
    request = fake_halaxy.calls("POST", "/Patient")[0]
    assert request.headers["content-type"] == "application/fhir+json"
    body = json.loads(request.content)
    assert body["name"] == [{"use": "official", "family": "Taylor", "given": ["Sam"]}]
    assert {"system": "sms", "value": "+61412345678", "use": "mobile"} in body["telecom"]
    assert body["birthDate"] == "1990-04-12"
    assert body["gender"] == "female"


def test_create_or_find_patient_rejects_sentinel_id(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Patient", bundle())
    fake_halaxy.add("POST", "/Patient", {"resourceType": "OperationOutcome", "id": "warning"})

    with pytest.raises(UpstreamApiError):
        halaxy_client.create_or_find_patient(
            PatientInput(first_name="Sam", last_name="Taylor", email="sam@example.com")
        )


def _appointment_input(**overrides) -> AppointmentInput:
    values = {
        "patient_id": "pat-5555",
        "start": datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
        "end": datetime(2024, 5, 1, 9, 50, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return AppointmentInput(**values)


@pytest.mark.parametrize("patient_id", ["", "warning", "error", "123"])
def test_create_appointment_validates_patient_before_network(fake_halaxy, halaxy_client, patient_id):
    with pytest.raises(InputValidationError):
        halaxy_client.create_appointment(_appointment_input(patient_id=patient_id))

    assert fake_halaxy.requests == []
    assert fake_halaxy.token_requests == []


def test_create_appointment_posts_book_parameters(fake_halaxy, halaxy_client):
    fake_halaxy.add("POST", "/Appointment/$book", {"resourceType": "Appointment", "id": "appt-1"})

    created = halaxy_client.create_appointment(_appointment_input())

    assert created["id"] == "appt-1"
    body = json.loads(fake_halaxy.calls("POST", "/Appointment/$book")[0].content)
    parameters = {parameter["name"]: parameter for parameter in body["parameter"]}
    appointment = parameters["appt-resource"]["resource"]
    assert appointment["start"] == "2024-05-01T09:00:00Z"
    assert appointment["minutesDuration"] == 50
    assert appointment["description"] == "Appointment booked via website"
    assert appointment["participant"][0]["actor"] == {
        "reference": f"{BASE_URL}/PractitionerRole/PR-ROLE-1",
        "type": "PractitionerRole",
    }
    assert parameters["patient-id"]["valueReference"]["reference"] == f"{BASE_URL}/Patient/pat-5555"
    assert (
        parameters["healthcare-service-id"]["valueReference"]["reference"]
        == f"{BASE_URL}/HealthcareService/HS-1"
    )
    assert parameters["location-type"]["valueCode"] == "clinic"
    assert parameters["status"]["valueCode"] == "booked"


def test_cancel_appointment_uses_merge_patch(fake_halaxy, halaxy_client):
    fake_halaxy.add("PATCH", "/Appointment/appt-1", httpx.Response(204))

    assert halaxy_client.cancel_appointment("appt-1", "Client unwell") is None

    request = fake_halaxy.calls("PATCH", "/Appointment/appt-1")[0]
    assert request.headers["content-type"] == "application/merge-patch+json"
    assert json.loads(request.content) == {
        "status": "cancelled",
        "cancelationReason": {"text": "Client unwell"},
    }


def test_find_available_appointments_query(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Appointment/$find", bundle({"id": "free-1"}))

    results = halaxy_client.find_available_appointments(
        datetime(2024, 5, 1, tzinfo=timezone.utc),
        datetime(2024, 5, 2, tzinfo=timezone.utc),
        50,
        practitioner_id="PR-1001",
    )

    assert [result["id"] for result in results] == ["free-1"]
    params = fake_halaxy.calls("GET", "/Appointment/$find")[0].url.params
    assert params["duration"] == "50"
    assert params["practitioner"] == "PR-1001"
    assert "apply-buffer-time" not in params
    assert "emergency" not in params


def test_find_available_appointments_optional_flags(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Appointment/$find", bundle())

    halaxy_client.find_available_appointments(
        datetime(2024, 5, 1, tzinfo=timezone.utc),
        datetime(2024, 5, 2, tzinfo=timezone.utc),
        50,
        apply_buffer_time=True,
        emergency=True,
    )

    params = fake_halaxy.calls("GET", "/Appointment/$find")[0].url.params
    assert params["apply-buffer-time"] == "true"
    assert params["emergency"] == "true"


def test_requests_pass_through_rate_limiter(fake_halaxy, make_halaxy_client):
    sleeps = []
    client = make_halaxy_client(make_config(max_requests_per_minute=2), sleep=sleeps.append)
    fake_halaxy.add("GET", "/Slot/slot-1", {"resourceType": "Slot", "id": "slot-1"})

    for _ in range(3):
        client.get_slot("slot-1")

    assert len(sleeps) == 1


def test_auth_retry_counts_against_rate_limit(fake_halaxy, make_halaxy_client):
    sleeps = []
    client = make_halaxy_client(make_config(max_requests_per_minute=2), sleep=sleeps.append)
    fake_halaxy.add(
        "GET",
        "/Patient/pat-1",
        httpx.Response(401, text="expired"),
        {"resourceType": "Patient", "id": "pat-1"},
    )

    client.get_patient("pat-1")
    assert sleeps == []

    client.get_patient("pat-1")
    assert len(sleeps) == 1


def test_patient_and_appointment_collection_queries(fake_halaxy, halaxy_client):
    fake_halaxy.add("GET", "/Patient", bundle())
    fake_halaxy.add("GET", "/Appointment", bundle())

    halaxy_client.get_all_patients()
    halaxy_client.get_appointments_by_patient("pat-1")

    assert fake_halaxy.calls("GET", "/Patient")[0].url.params["active"] == "true"
    appointment_params = fake_halaxy.calls("GET", "/Appointment")[0].url.params
    assert appointment_params["actor"] == "Patient/pat-1"
    assert "patient" not in appointment_params


def test_request_log_omits_query_string(fake_halaxy, halaxy_client, caplog):
    fake_halaxy.add("GET", "/Patient", bundle())

    with caplog.at_level("INFO", logger="bloom.services.halaxy.client"):
        halaxy_client.get_first_page("/Patient", {"email": "sam@example.com"})

    assert "Halaxy request: GET /main/Patient" in caplog.text
    assert "sam@example.com" not in caplog.text
