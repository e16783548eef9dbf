"""
Relational model of the clinical encounter workflow.

One encounter links a patient and a provider; triage entries and
investigation requests hang off it, and each request owns its results.
Consent records and OTP challenges are kept per patient.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clinicflow.helpers.time import utcnow
from clinicflow.models.database import Base, JSONType

MODALITIES = ("laboratory", "imaging")
REQUEST_STATUSES = ("requested", "not_collected", "collected", "results_posted")
ENCOUNTER_STATUSES = ("open", "closed")

ModalityEnum = Enum(*MODALITIES, name="modality_enum")


# ---------------------------------------------------------------------------
# Patient – registration identity and demographics
# ---------------------------------------------------------------------------
class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(128), nullable=False)
    middle_name = Column(String(128))
    last_name = Column(String(128), nullable=False)
    gender = Column(String(16))
    dob = Column(Date, comment="Date of birth")
    phone = Column(String(32))
    email = Column(String(255))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    encounters = relationship("Encounter", back_populates="patient")
    consents = relationship("PatientConsent", back_populates="patient", lazy="selectin")


# ---------------------------------------------------------------------------
# Staff – owned by the staff module, read here for providers and requesters
# ---------------------------------------------------------------------------
class Staff(Base):
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(32))
    first_name = Column(String(128), nullable=False)
    last_name = Column(String(128), nullable=False)
    role = Column(String(64))


# ---------------------------------------------------------------------------
# Encounter – one clinical visit
# ---------------------------------------------------------------------------
class Encounter(Base):
    __tablename__ = "encounters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    encounter_number = Column(String(64), nullable=False, unique=True)
    encounter_type = Column(String(32), nullable=False)
    priority_type = Column(String(32), nullable=False)
    insurance_type = Column(String(32), nullable=False)
    notes = Column(Text)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    status = Column(
        Enum(*ENCOUNTER_STATUSES, name="encounter_status_enum"),
        default="open",
        nullable=False,
    )
    closed_at = Column(DateTime)
    next_appointment_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship("Patient", back_populates="encounters")
    provider = relationship("Staff")
    investigation_requests = relationship(
        "InvestigationRequest",
        back_populates="encounter",
        cascade="all, delete-orphan",
    )
    triage_entries = relationship(
        "TriageEntry", back_populates="encounter", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_encounters_patient", "patient_id"),
        Index("ix_encounters_provider", "provider_id"),
    )


# ---------------------------------------------------------------------------
# Investigation catalog – immutable reference data
# ---------------------------------------------------------------------------
class InvestigationTest(Base):
    __tablename__ = "investigation_tests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False, unique=True)
    department = Column(String(128), nullable=False)
    modality = Column(ModalityEnum, nullable=False)
    parameters = Column(Text, comment="Serialized parameter schema (JSON list)")


# ---------------------------------------------------------------------------
# Investigation request – an order placed during an encounter
# ---------------------------------------------------------------------------
class InvestigationRequest(Base):
    __tablename__ = "investigation_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = Column(
        Integer, ForeignKey("encounters.id", ondelete="CASCADE"), nullable=False
    )
    test_id = Column(Integer, ForeignKey("investigation_tests.id"), nullable=True)
    custom_name = Column(String(255), nullable=True, comment="Free-text 'other' request")
    test_name = Column(String(255), nullable=False, comment="Display name")
    department = Column(String(128))
    modality = Column(ModalityEnum, nullable=False)
    status = Column(
        Enum(*REQUEST_STATUSES, name="request_status_enum"),
        default="not_collected",
        nullable=False,
    )
    request_notes = Column(Text)
    requested_by = Column(Integer, ForeignKey("staff.id"), nullable=False)
    date_requested = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    encounter = relationship("Encounter", back_populates="investigation_requests")
    test = relationship("InvestigationTest", lazy="joined")
    results = relationship(
        "InvestigationResult",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="InvestigationResult.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "(test_id IS NULL) <> (custom_name IS NULL)",
            name="ck_request_subject_exclusive",
        ),
        Index("ix_requests_encounter", "encounter_id"),
    )


class InvestigationResult(Base):
    __tablename__ = "investigation_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(
        Integer,
        ForeignKey("investigation_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    parameter = Column(String(255), nullable=False)
    value = Column(String(255), nullable=False)
    unit = Column(String(64))
    reference_range = Column(String(128))
    flag = Column(String(32))
    notes = Column(Text)
    entered_by = Column(Integer, ForeignKey("staff.id"), nullable=False)
    date_entered = Column(DateTime, default=utcnow, nullable=False)

    request = relationship("InvestigationRequest", back_populates="results")


# ---------------------------------------------------------------------------
# Triage – append-only vitals snapshots
# ---------------------------------------------------------------------------
class TriageEntry(Base):
    __tablename__ = "triage_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    encounter_id = Column(
        Integer, ForeignKey("encounters.id", ondelete="CASCADE"), nullable=True
    )
    patient_status = Column(String(255))
    temperature = Column(Float, comment="°C")
    heart_rate = Column(Integer, comment="bpm")
    bp_systolic = Column(Integer)
    bp_diastolic = Column(Integer)
    respiratory_rate = Column(Integer, comment="breaths/min")
    blood_oxygenation = Column(Float, comment="SpO2 %")
    weight = Column(Float, comment="kg")
    height = Column(Float, comment="cm")
    muac = Column(Float, comment="Mid-upper-arm circumference, cm")
    lmp_date = Column(Date, comment="Last menstrual period")
    comments = Column(Text)
    captured_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    encounter = relationship("Encounter", back_populates="triage_entries")

    __table_args__ = (Index("ix_triage_patient_captured", "patient_id", "captured_at"),)


# ---------------------------------------------------------------------------
# Consent – types, per-patient grants, and OTP challenges
# ---------------------------------------------------------------------------
class ConsentType(Base):
    __tablename__ = "consent_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(128), nullable=False)
    description = Column(Text)
    is_mandatory = Column(Boolean, default=False, nullable=False)
    requires_otp = Column(Boolean, default=False, nullable=False)


class PatientConsent(Base):
    __tablename__ = "patient_consents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    consent_type_id = Column(Integer, ForeignKey("consent_types.id"), nullable=False)
    granted = Column(Boolean, default=False, nullable=False)
    otp_verified = Column(Boolean, default=False, nullable=False)
    otp_bypassed = Column(Boolean, default=False, nullable=False)
    granted_at = Column(DateTime)
    revoked_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship("Patient", back_populates="consents")
    consent_type = relationship("ConsentType", lazy="joined")

    __table_args__ = (
        UniqueConstraint("patient_id", "consent_type_id", name="uq_patient_consent"),
    )


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, unique=True)
    code_digest = Column(String(64), nullable=False, comment="SHA-256 of the code")
    encrypted_phone = Column(Text, nullable=False, comment="Fernet-encrypted phone")
    expires_at = Column(DateTime, nullable=False)
    resend_available_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    verified_at = Column(DateTime)
    consumed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False)
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(64), nullable=False)
    detail = Column(JSONType, comment="Diff or context for the action")
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
