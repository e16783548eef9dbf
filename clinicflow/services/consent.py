"""
Consent / OTP gate.

Some consent types require the patient to confirm with a one-time
passcode before a grant may be stored. The gate:

- decides whether a grant map needs an OTP at all (``otp_required``);
- issues codes with a server-side expiry and resend cooldown;
- verifies codes, burning the challenge after too many wrong guesses;
- refuses to store OTP-gated grants unless the OTP was verified or the
  clinician explicitly chose to bypass it, which is audited.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicflow.config import settings
from clinicflow.errors import (
    ConsentError,
    NotFoundError,
    OtpCooldownError,
    PersistenceError,
    ValidationError,
)
from clinicflow.helpers.time import utcnow
from clinicflow.models.clinical import ConsentType, OtpChallenge, Patient, PatientConsent
from clinicflow.services.audit import log_action
from clinicflow.services.encryption import encryption, mask_phone

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Gate decision
# ---------------------------------------------------------------------------

def otp_required(grants: Mapping[int, bool], consent_types: Iterable[ConsentType]) -> bool:
    """True iff some OTP-gated consent type is granted in ``grants``."""
    return any(ct.requires_otp and grants.get(ct.id, False) for ct in consent_types)


def list_consent_types(db: Session) -> list[ConsentType]:
    return db.query(ConsentType).order_by(ConsentType.id).all()


def _require_patient(db: Session, patient_id: int) -> Patient:
    patient = db.get(Patient, patient_id)
    if patient is None:
        raise NotFoundError(f"Patient id={patient_id} not found")
    return patient


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Failed to {what}") from exc


# ---------------------------------------------------------------------------
# OTP lifecycle
# ---------------------------------------------------------------------------

class OtpSender(Protocol):
    def send(self, phone: str, code: str) -> None: ...


class LoggingOtpSender:
    """Stand-in delivery channel: records that a code went out, never the code."""

    def send(self, phone: str, code: str) -> None:
        logger.info("Consent OTP dispatched to %s", mask_phone(phone))


default_sender: OtpSender = LoggingOtpSender()


@dataclass
class PendingOtp:
    patient_id: int
    sent_to: str
    expires_at: datetime
    resend_available_at: datetime


def _generate_code() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(settings.OTP_LENGTH))


def _digest(patient_id: int, code: str) -> str:
    return hashlib.sha256(f"{patient_id}:{code}".encode()).hexdigest()


def _challenge(db: Session, patient_id: int) -> OtpChallenge | None:
    return db.query(OtpChallenge).filter(OtpChallenge.patient_id == patient_id).first()


def request_otp(
    db: Session,
    patient_id: int,
    phone: str | None = None,
    *,
    sender: OtpSender = default_sender,
    now: datetime | None = None,
) -> PendingOtp:
    """
    Issue a fresh code for the patient, replacing any earlier challenge.
    Refused while the previous code's resend cooldown is running. The code
    is sent only once the challenge is stored.
    """
    patient = _require_patient(db, patient_id)
    phone = (phone or patient.phone or "").strip()
    if not phone:
        raise ValidationError("Patient phone number is required for OTP verification")

    now = now or utcnow()
    challenge = _challenge(db, patient_id)
    if challenge is not None and challenge.resend_available_at > now:
        wait = math.ceil((challenge.resend_available_at - now).total_seconds())
        raise OtpCooldownError(f"Please wait {wait}s before requesting a new code", wait)

    code = _generate_code()
    if challenge is None:
        challenge = OtpChallenge(patient_id=patient_id)
        db.add(challenge)
    challenge.code_digest = _digest(patient_id, code)
    challenge.encrypted_phone = encryption.encrypt(phone)
    challenge.expires_at = now + timedelta(seconds=settings.OTP_TTL_SECONDS)
    challenge.resend_available_at = now + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS)
    challenge.attempts = 0
    challenge.verified_at = None
    challenge.consumed_at = None
    challenge.created_at = now

    log_action(
        db,
        actor="api_user",
        action="otp_sent",
        resource_type="Patient",
        resource_id=patient_id,
        detail={"sent_to": mask_phone(phone)},
    )
    _commit(db, "store OTP challenge")
    sender.send(phone, code)

    return PendingOtp(
        patient_id=patient_id,
        sent_to=mask_phone(phone),
        expires_at=challenge.expires_at,
        resend_available_at=challenge.resend_available_at,
    )


def verify_otp(
    db: Session, patient_id: int, code: str, *, now: datetime | None = None
) -> bool:
    _require_patient(db, patient_id)
    now = now or utcnow()
    challenge = _challenge(db, patient_id)

    if challenge is None or challenge.consumed_at is not None:
        logger.info("No active OTP for patient %s", patient_id)
        return False
    if challenge.expires_at <= now:
        logger.info("OTP expired for patient %s", patient_id)
        return False
    if challenge.attempts >= settings.OTP_MAX_ATTEMPTS:
        logger.warning("OTP for patient %s burned after too many attempts", patient_id)
        return False

    if not hmac.compare_digest(challenge.code_digest, _digest(patient_id, (code or "").strip())):
        challenge.attempts += 1
        _commit(db, "record OTP attempt")
        logger.info("Invalid OTP for patient %s (attempt %d)", patient_id, challenge.attempts)
        return False

    challenge.verified_at = now
    log_action(
        db,
        actor="api_user",
        action="otp_verified",
        resource_type="Patient",
        resource_id=patient_id,
    )
    _commit(db, "record OTP verification")
    logger.info("OTP verified for patient %s", patient_id)
    return True


def has_verified_otp(db: Session, patient_id: int, *, now: datetime | None = None) -> bool:
    """A verified, unused, unexpired challenge exists for the patient."""
    now = now or utcnow()
    challenge = _challenge(db, patient_id)
    return (
        challenge is not None
        and challenge.verified_at is not None
        and challenge.consumed_at is None
        and challenge.expires_at > now
    )


# ---------------------------------------------------------------------------
# Consent records
# ---------------------------------------------------------------------------

@dataclass
class ConsentGrant:
    consent_type_id: int
    granted: bool


@dataclass
class ConsentSummary:
    records: list[PatientConsent]
    missing_mandatory: list[ConsentType]


def get_consents(db: Session, patient_id: int) -> ConsentSummary:
    _require_patient(db, patient_id)
    records = (
        db.query(PatientConsent)
        .filter(PatientConsent.patient_id == patient_id)
        .order_by(PatientConsent.consent_type_id)
        .all()
    )
    granted = {r.consent_type_id for r in records if r.granted}
    missing = [
        ct for ct in list_consent_types(db) if ct.is_mandatory and ct.id not in granted
    ]
    return ConsentSummary(records=records, missing_mandatory=missing)


def save_consents(
    db: Session,
    patient_id: int,
    grants: list[ConsentGrant],
    *,
    otp_verified: bool,
    allow_bypass: bool,
    actor: str = "api_user",
) -> list[PatientConsent]:
    """
    Upsert one record per consent type in ``grants``.

    Raises ConsentError when an OTP-gated type is granted and the OTP was
    neither verified nor explicitly bypassed. Under bypass the gated
    records are stored with ``otp_verified = False, otp_bypassed = True``.
    """
    _require_patient(db, patient_id)
    types = {ct.id: ct for ct in list_consent_types(db)}
    unknown = sorted({g.consent_type_id for g in grants} - types.keys())
    if unknown:
        raise ValidationError(f"Unknown consent type id(s): {unknown}")

    grant_map = {g.consent_type_id: bool(g.granted) for g in grants}
    needs_otp = otp_required(grant_map, types.values())
    if needs_otp and not otp_verified and not allow_bypass:
        raise ConsentError(
            "Please verify OTP before saving consents that require verification"
        )
    bypassed = needs_otp and not otp_verified

    existing = {
        r.consent_type_id: r
        for r in db.query(PatientConsent).filter(PatientConsent.patient_id == patient_id)
    }
    now = utcnow()
    saved = []
    for type_id, granted in sorted(grant_map.items()):
        record = existing.get(type_id)
        if record is None:
            record = PatientConsent(patient_id=patient_id, consent_type_id=type_id, granted=False)
            db.add(record)
        if granted and not record.granted:
            record.granted_at = now
            record.revoked_at = None
        elif not granted and record.granted:
            record.revoked_at = now
        record.granted = granted

        gated = types[type_id].requires_otp and granted
        record.otp_verified = gated and otp_verified
        record.otp_bypassed = gated and bypassed
        saved.append(record)

    if needs_otp and otp_verified:
        challenge = _challenge(db, patient_id)
        if challenge is not None and challenge.consumed_at is None:
            challenge.consumed_at = now

    log_action(
        db,
        actor=actor,
        action="consent_save",
        resource_type="Patient",
        resource_id=patient_id,
        detail={"grants": {str(k): v for k, v in grant_map.items()}, "otp_verified": otp_verified},
    )
    if bypassed:
        gated_ids = [r.consent_type_id for r in saved if r.otp_bypassed]
        log_action(
            db,
            actor=actor,
            action="consent_otp_bypass",
            resource_type="Patient",
            resource_id=patient_id,
            detail={"consent_type_ids": gated_ids},
        )
        logger.warning(
            "Consents for patient %s saved without OTP (bypass) for types %s",
            patient_id, gated_ids,
        )
    _commit(db, "save consents")

    logger.info("Saved %d consent record(s) for patient %s", len(saved), patient_id)
    return saved
