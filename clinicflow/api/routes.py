"""
FastAPI routes – patients, encounters, triage, and the health check.

Handlers translate HTTP into service calls; services raise
ClinicflowError subclasses which the app renders (see main.py).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicflow.config import settings
from clinicflow.errors import PersistenceError
from clinicflow.models.clinical import Patient, Staff, TriageEntry
from clinicflow.models.database import get_db
from clinicflow.schemas.api import (
    BloodPressure,
    EncounterClose,
    EncounterCloseResponse,
    EncounterCreate,
    EncounterResponse,
    EncounterResume,
    EncounterResumeResponse,
    EnrichedEncounter,
    HealthResponse,
    PatientCreate,
    PatientResponse,
    StaffResponse,
    TriageCreate,
    TriageResponse,
)
from clinicflow.services import encounters, enrichment, triage

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database")
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Patients and staff (registration boundary)
# ---------------------------------------------------------------------------

@router.post("/patients", response_model=PatientResponse, status_code=201)
def register_patient(payload: PatientCreate, db: Session = Depends(get_db)):
    patient = Patient(**payload.model_dump())
    try:
        db.add(patient)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to register patient") from exc
    db.refresh(patient)
    logger.info("Registered patient %s", patient.id)
    return patient


@router.get("/patients", response_model=list[PatientResponse])
def list_patients(db: Session = Depends(get_db)):
    return db.query(Patient).order_by(Patient.id).all()


@router.get("/patients/{patient_id}", response_model=PatientResponse)
def get_patient(patient_id: int, db: Session = Depends(get_db)):
    patient = db.get(Patient, patient_id)
    if patient is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


@router.get("/staff", response_model=list[StaffResponse])
def list_staff(db: Session = Depends(get_db)):
    return db.query(Staff).order_by(Staff.id).all()


# ---------------------------------------------------------------------------
# Encounters
# ---------------------------------------------------------------------------

def _as_dict(model, schema) -> dict:
    return schema.model_validate(model).model_dump()


@router.get("/encounters", response_model=list[EnrichedEncounter])
def list_encounters(patient_id: int | None = None, db: Session = Depends(get_db)):
    """Encounters newest first, each labelled with patient and provider names."""
    rows = encounters.list_encounters(db, patient_id)
    encounter_dicts = [_as_dict(row, EncounterResponse) for row in rows]

    if patient_id is not None:
        # Single patient: the fragment is known, embed it rather than look it up
        patient = db.get(Patient, patient_id)
        fragment = _as_dict(patient, PatientResponse) if patient else None
        for item in encounter_dicts:
            item["patient"] = fragment
        patients = []
    else:
        patient_ids = {row.patient_id for row in rows}
        patients = [
            _as_dict(p, PatientResponse)
            for p in db.query(Patient).filter(Patient.id.in_(patient_ids))
        ]

    provider_ids = {row.provider_id for row in rows}
    staff = [
        _as_dict(s, StaffResponse)
        for s in db.query(Staff).filter(Staff.id.in_(provider_ids))
    ]
    return enrichment.enrich_encounters(encounter_dicts, patients, staff)


@router.get("/encounters/{encounter_id}", response_model=EncounterResponse)
def get_encounter(encounter_id: int, db: Session = Depends(get_db)):
    return encounters.get_encounter(db, encounter_id)


@router.post("/encounters", response_model=EncounterResponse, status_code=201)
def open_encounter(payload: EncounterCreate, db: Session = Depends(get_db)):
    return encounters.open_encounter(db, **payload.model_dump())


@router.post("/encounters/resume", response_model=EncounterResumeResponse)
def resume_or_create_encounter(payload: EncounterResume, db: Session = Depends(get_db)):
    encounter, created = encounters.resume_or_create(db, payload.patient_id, payload.provider_id)
    return EncounterResumeResponse(
        encounter=EncounterResponse.model_validate(encounter), created=created
    )


@router.patch("/encounters/{encounter_id}", response_model=EncounterCloseResponse)
def close_encounter(encounter_id: int, payload: EncounterClose, db: Session = Depends(get_db)):
    encounter = encounters.close_encounter(
        db,
        encounter_id,
        notes=payload.notes,
        closed_at=payload.closed_at,
        next_appointment_at=payload.next_appointment_at,
    )
    return EncounterCloseResponse(
        **_as_dict(encounter, EncounterResponse),
        pending_investigations=encounters.pending_investigations(db, encounter_id),
    )


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------

def _triage_response(entry: TriageEntry) -> TriageResponse:
    pressure = None
    if entry.bp_systolic is not None and entry.bp_diastolic is not None:
        pressure = BloodPressure(systolic=entry.bp_systolic, diastolic=entry.bp_diastolic)
    return TriageResponse(
        id=entry.id,
        patient_id=entry.patient_id,
        encounter_id=entry.encounter_id,
        patient_status=entry.patient_status,
        temperature=entry.temperature,
        heart_rate=entry.heart_rate,
        blood_pressure=pressure,
        respiratory_rate=entry.respiratory_rate,
        blood_oxygenation=entry.blood_oxygenation,
        weight=entry.weight,
        height=entry.height,
        muac=entry.muac,
        lmp_date=entry.lmp_date,
        comments=entry.comments,
        captured_at=entry.captured_at,
        bmi=triage.bmi(entry.weight, entry.height),
        warnings=triage.vital_warnings(entry),
    )


@router.post("/triage", response_model=TriageResponse, status_code=201)
def record_triage(payload: TriageCreate, db: Session = Depends(get_db)):
    pressure = payload.blood_pressure
    vitals = triage.Vitals(
        patient_status=payload.patient_status,
        temperature=payload.temperature,
        heart_rate=payload.heart_rate,
        bp_systolic=pressure.systolic if pressure else None,
        bp_diastolic=pressure.diastolic if pressure else None,
        respiratory_rate=payload.respiratory_rate,
        blood_oxygenation=payload.blood_oxygenation,
        weight=payload.weight,
        height=payload.height,
        muac=payload.muac,
        lmp_date=payload.lmp_date,
    )
    entry = triage.record_triage(
        db,
        payload.patient_id,
        vitals,
        payload.comments,
        encounter_id=payload.encounter_id,
        captured_at=payload.captured_at,
    )
    return _triage_response(entry)


@router.get("/triage", response_model=list[TriageResponse])
def triage_history(patient_id: int, db: Session = Depends(get_db)):
    return [_triage_response(e) for e in triage.triage_history(db, patient_id)]


@router.get("/triage/latest", response_model=TriageResponse)
def latest_triage(patient_id: int, db: Session = Depends(get_db)):
    entry = triage.latest_triage(db, patient_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="No triage recorded for this patient")
    return _triage_response(entry)
