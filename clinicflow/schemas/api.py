"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Modality = Literal["laboratory", "imaging"]
RequestStatusName = Literal["requested", "not_collected", "collected", "results_posted"]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Patients and staff
# ---------------------------------------------------------------------------

class PatientCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    middle_name: str | None = None
    last_name: str = Field(..., min_length=1)
    gender: str | None = None
    dob: date | None = None
    phone: str | None = None
    email: str | None = None


class PatientResponse(ORMModel):
    id: int
    first_name: str
    middle_name: str | None = None
    last_name: str
    gender: str | None = None
    dob: date | None = None
    phone: str | None = None
    email: str | None = None
    created_at: datetime


class StaffResponse(ORMModel):
    id: int
    title: str | None = None
    first_name: str
    last_name: str
    role: str | None = None


# ---------------------------------------------------------------------------
# Encounters
# ---------------------------------------------------------------------------

class EncounterCreate(BaseModel):
    patient_id: int
    provider_id: int
    encounter_type: str = "Consultation"
    priority_type: str = "Normal"
    insurance_type: str = "Self Payment"
    notes: str | None = None


class EncounterResume(BaseModel):
    patient_id: int
    provider_id: int | None = None


class EncounterClose(BaseModel):
    notes: str | None = None
    closed_at: datetime | None = None
    next_appointment_at: datetime | None = None


class EncounterResponse(ORMModel):
    id: int
    encounter_number: str
    encounter_type: str
    priority_type: str
    insurance_type: str
    notes: str | None = None
    patient_id: int
    provider_id: int
    status: str
    closed_at: datetime | None = None
    next_appointment_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None


class EncounterResumeResponse(BaseModel):
    encounter: EncounterResponse
    created: bool


class EncounterCloseResponse(EncounterResponse):
    pending_investigations: int = 0


class EnrichedEncounter(EncounterResponse):
    patient_name: str
    patient_gender: str
    patient_age: int | None = None
    patient_phone: str | None = None
    provider_name: str


# ---------------------------------------------------------------------------
# Investigation catalog
# ---------------------------------------------------------------------------

class ParameterResponse(BaseModel):
    parameter: str
    unit: str | None = None
    range: str | None = None


class InvestigationTestResponse(BaseModel):
    id: int
    name: str
    department: str
    type: Modality
    parameters: list[ParameterResponse] | None = None


# ---------------------------------------------------------------------------
# Investigation requests and results
# ---------------------------------------------------------------------------

class EncounterInvestigationsCreate(BaseModel):
    """Clinician order: catalog selections plus an optional free-text request."""
    test_ids: list[int] = []
    other_request: str | None = None
    request_notes: str | None = None
    requested_by: int
    type: Modality = "laboratory"


class InvestigationRequestCreate(BaseModel):
    encounter_id: int
    test_id: int | None = None
    test_name: str | None = None
    department: str | None = None
    type: Modality | None = None
    status: Literal["requested", "not_collected"] | None = None
    request_notes: str | None = None
    requested_by: int
    date_requested: datetime | None = None


class InvestigationRequestBatch(BaseModel):
    requests: list[InvestigationRequestCreate] = Field(..., min_length=1, max_length=200)


class StatusUpdate(BaseModel):
    status: RequestStatusName


class InvestigationResultResponse(ORMModel):
    id: int
    request_id: int
    parameter: str
    value: str
    unit: str | None = None
    reference_range: str | None = None
    flag: str | None = None
    notes: str | None = None
    entered_by: int
    date_entered: datetime


class InvestigationRequestResponse(ORMModel):
    id: int | str
    encounter_id: int
    test_id: int | None = None
    custom_name: str | None = None
    test_name: str
    department: str | None = None
    type: Modality = Field(validation_alias=AliasChoices("modality", "type"))
    status: RequestStatusName
    request_notes: str | None = None
    requested_by: int
    date_requested: datetime
    provisional: bool = False
    results: list[InvestigationResultResponse] = []


class ResultValueIn(BaseModel):
    parameter: str | None = None
    value: str | None = None
    flag: str | None = None
    notes: str | None = None


class ResultsSubmission(BaseModel):
    results: list[ResultValueIn]
    additional_notes: str | None = None
    status: Literal["results_posted"] | None = None
    entered_by: int


class ResultsSaved(BaseModel):
    request: InvestigationRequestResponse
    results: list[InvestigationResultResponse]
    status: RequestStatusName


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------

class BloodPressure(BaseModel):
    systolic: int
    diastolic: int


class TriageCreate(BaseModel):
    patient_id: int
    encounter_id: int | None = None
    patient_status: str | None = None
    temperature: float | None = None
    heart_rate: int | None = None
    blood_pressure: BloodPressure | None = None
    respiratory_rate: int | None = None
    blood_oxygenation: float | None = None
    weight: float | None = None
    height: float | None = None
    muac: float | None = None
    lmp_date: date | None = None
    comments: str | None = None
    captured_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("captured_at", "date")
    )

    @field_validator("blood_pressure", mode="before")
    @classmethod
    def parse_blood_pressure(cls, value):
        """Accept the ``"120/80"`` form used at the front desk."""
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            systolic, sep, diastolic = text.partition("/")
            if not sep:
                raise ValueError("blood_pressure must look like '120/80'")
            return {"systolic": systolic.strip(), "diastolic": diastolic.strip()}
        return value


class TriageResponse(BaseModel):
    id: int
    patient_id: int
    encounter_id: int | None = None
    patient_status: str | None = None
    temperature: float | None = None
    heart_rate: int | None = None
    blood_pressure: BloodPressure | None = None
    respiratory_rate: int | None = None
    blood_oxygenation: float | None = None
    weight: float | None = None
    height: float | None = None
    muac: float | None = None
    lmp_date: date | None = None
    comments: str | None = None
    captured_at: datetime
    bmi: float | None = None
    warnings: list[str] = []


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------

class ConsentTypeResponse(ORMModel):
    id: int
    code: str
    name: str
    description: str | None = None
    is_mandatory: bool
    requires_otp: bool


class ConsentGrantIn(BaseModel):
    consent_type_id: int
    is_granted: bool


class ConsentSave(BaseModel):
    consents: list[ConsentGrantIn]
    allow_bypass: bool = False


class ConsentRecordResponse(ORMModel):
    consent_type_id: int
    is_granted: bool = Field(validation_alias=AliasChoices("granted", "is_granted"))
    otp_verified: bool
    otp_bypassed: bool
    granted_at: datetime | None = None
    revoked_at: datetime | None = None


class ConsentSummaryResponse(BaseModel):
    patient_id: int
    consents: list[ConsentRecordResponse]
    missing_mandatory: list[ConsentTypeResponse] = []


class OtpSend(BaseModel):
    phone: str | None = None


class OtpPending(BaseModel):
    sent_to: str
    expires_at: datetime
    resend_available_at: datetime


class OtpVerify(BaseModel):
    otp: str = Field(..., min_length=4)


class OtpVerified(BaseModel):
    verified: bool


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
