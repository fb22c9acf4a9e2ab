"""Typed views over the FHIR-R4 payloads returned by Halaxy.

Only the fields the sync reads are declared; everything else is kept as
extra data so a round trip through the model never drops upstream content.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class FhirModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Coding(FhirModel):
    system: str | None = None
    code: str | None = None
    display: str | None = None


class CodeableConcept(FhirModel):
    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None


class HumanName(FhirModel):
    use: str | None = None
    family: str | None = None
    given: list[str] = Field(default_factory=list)
    prefix: list[str] = Field(default_factory=list)
    suffix: list[str] = Field(default_factory=list)


class ContactPoint(FhirModel):
    system: str | None = None
    value: str | None = None
    use: str | None = None


class Identifier(FhirModel):
    system: str | None = None
    value: str | None = None


class Reference(FhirModel):
    reference: str | None = None
    display: str | None = None
    type: str | None = None


class Money(FhirModel):
    value: float | None = None
    currency: str | None = None


class Extension(FhirModel):
    url: str = ""
    value_string: str | None = None
    value_boolean: bool | None = None
    value_integer: int | None = None
    value_date: str | None = None
    value_money: Money | None = None
    value_reference: Reference | None = None


class Period(FhirModel):
    start: str | None = None
    end: str | None = None


class Qualification(FhirModel):
    identifier: list[Identifier] = Field(default_factory=list)
    code: CodeableConcept | None = None
    period: Period | None = None
    issuer: Reference | None = None

    @field_validator("identifier", mode="before")
    @classmethod
    def _single_identifier(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value


class FhirResource(FhirModel):
    resource_type: str | None = None
    id: str | None = None


class FhirPractitioner(FhirResource):
    resource_type: Literal["Practitioner"] | None = "Practitioner"
    active: bool | None = None
    identifier: list[Identifier] = Field(default_factory=list)
    name: list[HumanName] = Field(default_factory=list)
    telecom: list[ContactPoint] = Field(default_factory=list)
    gender: str | None = None
    birth_date: str | None = None
    qualification: list[Qualification] = Field(default_factory=list)


class FhirPractitionerRole(FhirResource):
    resource_type: Literal["PractitionerRole"] | None = "PractitionerRole"
    active: bool | None = None
    practitioner: Reference | None = None
    organization: Reference | None = None
    location: list[Reference] = Field(default_factory=list)
    specialty: list[CodeableConcept] = Field(default_factory=list)


class FhirPatient(FhirResource):
    resource_type: Literal["Patient"] | None = "Patient"
    active: bool | None = None
    identifier: list[Identifier] = Field(default_factory=list)
    name: list[HumanName] = Field(default_factory=list)
    telecom: list[ContactPoint] = Field(default_factory=list)
    gender: str | None = None
    birth_date: str | None = None
    general_practitioner: list[Reference] = Field(default_factory=list)
    managing_organization: Reference | None = None
    extension: list[Extension] = Field(default_factory=list)


class AppointmentParticipant(FhirModel):
    actor: Reference | None = None
    required: str | None = None
    status: str | None = None
    type: list[CodeableConcept] = Field(default_factory=list)


class FhirAppointment(FhirResource):
    resource_type: Literal["Appointment"] | None = "Appointment"
    status: str | None = None
    service_type: list[CodeableConcept] = Field(default_factory=list)
    appointment_type: CodeableConcept | None = None
    description: str | None = None
    comment: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    minutes_duration: int | None = None
    participant: list[AppointmentParticipant] = Field(default_factory=list)
    extension: list[Extension] = Field(default_factory=list)


class FhirSchedule(FhirResource):
    resource_type: Literal["Schedule"] | None = "Schedule"
    active: bool | None = None
    actor: list[Reference] = Field(default_factory=list)
    planning_horizon: Period | None = None
    comment: str | None = None


class FhirSlot(FhirResource):
    resource_type: Literal["Slot"] | None = "Slot"
    status: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    overbooked: bool | None = None
    schedule: Reference | None = None
    actor: list[Reference] = Field(default_factory=list)
    service_category: list[CodeableConcept] = Field(default_factory=list)
    service_type: list[CodeableConcept] = Field(default_factory=list)
    appointment_type: CodeableConcept | None = None
    comment: str | None = None


class BundleLink(FhirModel):
    relation: str | None = None
    url: str | None = None


class BundleEntry(FhirModel):
    full_url: str | None = None
    resource: Any = None


class Bundle(FhirModel):
    resource_type: str | None = "Bundle"
    type: str | None = None
    total: int | None = None
    link: list[BundleLink] = Field(default_factory=list)
    entry: list[BundleEntry] = Field(default_factory=list)

    def next_url(self) -> str | None:
        for link in self.link:
            if link.relation == "next" and link.url:
                return link.url
        return None

    @field_validator("link", "entry", mode="before")
    @classmethod
    def _null_to_empty(cls, value):
        if value is None:
            return []
        return value
