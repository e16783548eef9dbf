"""Triage recorder – append-only vitals snapshots per patient."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicflow.errors import NotFoundError, PersistenceError, ValidationError
from clinicflow.helpers.time import to_naive_utc, utcnow
from clinicflow.models.clinical import Encounter, Patient, TriageEntry

logger = logging.getLogger(__name__)


@dataclass
class Vitals:
    patient_status: str | None = None
    temperature: float | None = None
    heart_rate: int | None = None
    bp_systolic: int | None = None
    bp_diastolic: int | None = None
    respiratory_rate: int | None = None
    blood_oxygenation: float | None = None
    weight: float | None = None
    height: float | None = None
    muac: float | None = None
    lmp_date: date | None = None


# Display-only plausibility bands; capture never rejects a value
PLAUSIBLE_RANGES: dict[str, tuple[float, float, str]] = {
    "temperature": (30, 45, "Temperature outside 30-45 °C"),
    "heart_rate": (30, 250, "Heart rate outside 30-250 bpm"),
    "respiratory_rate": (5, 60, "Respiratory rate outside 5-60 breaths/min"),
    "blood_oxygenation": (0, 100, "Blood oxygenation outside 0-100 %"),
    "weight": (0.5, 500, "Weight outside 0.5-500 kg"),
    "height": (30, 250, "Height outside 30-250 cm"),
}


def vital_warnings(entry: TriageEntry | Vitals) -> list[str]:
    warnings = []
    for name, (low, high, message) in PLAUSIBLE_RANGES.items():
        value = getattr(entry, name, None)
        if value is not None and not low <= value <= high:
            warnings.append(message)
    return warnings


def bmi(weight: float | None, height: float | None) -> float | None:
    """Body-mass index from kg and cm, rounded to one decimal."""
    if not weight or not height or height <= 0:
        return None
    metres = height / 100
    return round(weight / (metres * metres), 1)


def record_triage(
    db: Session,
    patient_id: int | None,
    vitals: Vitals,
    comments: str | None = None,
    *,
    encounter_id: int | None = None,
    captured_at: datetime | None = None,
) -> TriageEntry:
    if patient_id is None:
        raise ValidationError("Patient ID is required")
    if db.get(Patient, patient_id) is None:
        raise NotFoundError(f"No patient found with ID: {patient_id}")
    if encounter_id is not None:
        encounter = db.get(Encounter, encounter_id)
        if encounter is None:
            raise NotFoundError(f"Encounter id={encounter_id} not found")
        if encounter.patient_id != patient_id:
            raise ValidationError(
                f"Encounter {encounter_id} does not belong to patient {patient_id}"
            )

    entry = TriageEntry(
        patient_id=patient_id,
        encounter_id=encounter_id,
        comments=comments or None,
        captured_at=to_naive_utc(captured_at) or utcnow(),
        **asdict(vitals),
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to save triage record") from exc

    db.refresh(entry)
    warnings = vital_warnings(entry)
    if warnings:
        logger.info("Triage %s recorded with display warnings: %s", entry.id, warnings)
    else:
        logger.info("Triage %s recorded for patient %s", entry.id, patient_id)
    return entry


def triage_history(db: Session, patient_id: int) -> list[TriageEntry]:
    """All entries for a patient, newest capture first."""
    return (
        db.query(TriageEntry)
        .filter(TriageEntry.patient_id == patient_id)
        .order_by(TriageEntry.captured_at.desc(), TriageEntry.id.desc())
        .all()
    )


def latest_triage(db: Session, patient_id: int) -> TriageEntry | None:
    return (
        db.query(TriageEntry)
        .filter(TriageEntry.patient_id == patient_id)
        .order_by(TriageEntry.captured_at.desc(), TriageEntry.id.desc())
        .first()
    )
