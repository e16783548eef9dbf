"""
Encounter lifecycle: open -> closed.

An encounter is one visit linking a patient and a provider. Triage and
investigation requests attach to it while it is open. Closing is terminal;
a patient who comes back gets a new encounter.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicflow.config import settings
from clinicflow.errors import NotFoundError, PersistenceError, StateError, ValidationError
from clinicflow.helpers.time import to_naive_utc, utcnow
from clinicflow.models.clinical import Encounter, InvestigationRequest, Patient, Staff
from clinicflow.services.audit import log_action

logger = logging.getLogger(__name__)

ENCOUNTER_TYPES = ("Consultation", "Delivery", "Check-up", "Surgery", "Treatment", "Visit")
PRIORITY_TYPES = ("High", "Normal", "Serious", "Can wait", "Admission")
INSURANCE_TYPES = ("Self Payment", "SHA", "UAP", "Jubilee", "AAR", "NHIF", "Other")


def generate_encounter_number(now: datetime | None = None, rng: random.Random | None = None) -> str:
    """``ENC-<epoch ms>-<3 digits>``; collisions are possible but negligible."""
    now = now or utcnow()
    rng = rng or random
    millis = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"{settings.ENCOUNTER_NUMBER_PREFIX}-{millis}-{rng.randint(0, 999):03d}"


def _check_choice(value: str, allowed: tuple[str, ...], label: str) -> str:
    if value not in allowed:
        raise ValidationError(f"Unknown {label} '{value}'; expected one of {', '.join(allowed)}")
    return value


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to %s: %s", what, exc)
        raise PersistenceError(f"Failed to {what}") from exc


def get_encounter(db: Session, encounter_id: int) -> Encounter:
    encounter = db.get(Encounter, encounter_id)
    if encounter is None:
        raise NotFoundError("Encounter not found")
    return encounter


def list_encounters(db: Session, patient_id: int | None = None) -> list[Encounter]:
    """Newest first."""
    q = db.query(Encounter)
    if patient_id is not None:
        q = q.filter(Encounter.patient_id == patient_id)
    return q.order_by(Encounter.created_at.desc(), Encounter.id.desc()).all()


def open_encounter(
    db: Session,
    patient_id: int,
    provider_id: int,
    encounter_type: str = "Consultation",
    priority_type: str = "Normal",
    insurance_type: str = "Self Payment",
    notes: str | None = None,
) -> Encounter:
    _check_choice(encounter_type, ENCOUNTER_TYPES, "encounter type")
    _check_choice(priority_type, PRIORITY_TYPES, "priority")
    _check_choice(insurance_type, INSURANCE_TYPES, "insurance type")
    if db.get(Patient, patient_id) is None:
        raise NotFoundError("Patient not found")
    if db.get(Staff, provider_id) is None:
        raise NotFoundError(f"Provider id={provider_id} not found")

    encounter = Encounter(
        encounter_number=generate_encounter_number(),
        encounter_type=encounter_type,
        priority_type=priority_type,
        insurance_type=insurance_type,
        notes=notes or None,
        patient_id=patient_id,
        provider_id=provider_id,
        status="open",
    )
    try:
        db.add(encounter)
        db.flush()
        log_action(
            db,
            actor=f"staff:{provider_id}",
            action="open",
            resource_type="Encounter",
            resource_id=encounter.id,
            detail={"encounter_number": encounter.encounter_number, "patient_id": patient_id},
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to create encounter") from exc
    _commit(db, "create encounter")

    db.refresh(encounter)
    logger.info(
        "Opened encounter %s (%s) for patient %s",
        encounter.id, encounter.encounter_number, patient_id,
    )
    return encounter


def resume_or_create(
    db: Session, patient_id: int, provider_id: int | None = None
) -> tuple[Encounter, bool]:
    """
    The patient's most recently created encounter, whatever its status;
    a new one only when the patient has none. Returns ``(encounter, created)``.
    Two sessions racing here may both create; the later one becomes the
    most recent.
    """
    latest = (
        db.query(Encounter)
        .filter(Encounter.patient_id == patient_id)
        .order_by(Encounter.created_at.desc(), Encounter.id.desc())
        .first()
    )
    if latest is not None:
        return latest, False
    if provider_id is None:
        raise ValidationError("provider_id is required to open a new encounter")
    return open_encounter(db, patient_id, provider_id), True


def pending_investigations(db: Session, encounter_id: int) -> int:
    return (
        db.query(InvestigationRequest)
        .filter(
            InvestigationRequest.encounter_id == encounter_id,
            InvestigationRequest.status != "results_posted",
        )
        .count()
    )


def close_encounter(
    db: Session,
    encounter_id: int,
    notes: str | None = None,
    closed_at: datetime | None = None,
    next_appointment_at: datetime | None = None,
) -> Encounter:
    """
    Close an open encounter. Investigations that have not reached
    results_posted do not block closing; they are only reported.
    """
    encounter = get_encounter(db, encounter_id)
    if encounter.status != "open":
        raise StateError(f"Encounter {encounter.encounter_number} is already closed")

    pending = pending_investigations(db, encounter_id)
    if pending:
        logger.warning(
            "Closing encounter %s with %d investigation(s) still pending",
            encounter_id, pending,
        )

    encounter.status = "closed"
    encounter.closed_at = to_naive_utc(closed_at) or utcnow()
    encounter.next_appointment_at = to_naive_utc(next_appointment_at)
    if notes:
        encounter.notes = f"{encounter.notes}\n{notes}" if encounter.notes else notes
    try:
        log_action(
            db,
            actor=f"staff:{encounter.provider_id}",
            action="close",
            resource_type="Encounter",
            resource_id=encounter.id,
            detail={"pending_investigations": pending},
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to close encounter") from exc
    _commit(db, "close encounter")

    logger.info("Closed encounter %s", encounter_id)
    return encounter
