"""
FastAPI routes – patient consents and the consent OTP lifecycle.

Whether an OTP was verified is read from the server-side challenge, never
taken from the request body.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinicflow.models.database import get_db
from clinicflow.schemas.api import (
    ConsentRecordResponse,
    ConsentSave,
    ConsentSummaryResponse,
    ConsentTypeResponse,
    OtpPending,
    OtpSend,
    OtpVerified,
    OtpVerify,
)
from clinicflow.services import consent

logger = logging.getLogger(__name__)

router = APIRouter()


def _summary(db: Session, patient_id: int) -> ConsentSummaryResponse:
    summary = consent.get_consents(db, patient_id)
    return ConsentSummaryResponse(
        patient_id=patient_id,
        consents=[ConsentRecordResponse.model_validate(r) for r in summary.records],
        missing_mandatory=[ConsentTypeResponse.model_validate(t) for t in summary.missing_mandatory],
    )


@router.get("/consent-types", response_model=list[ConsentTypeResponse])
def list_consent_types(db: Session = Depends(get_db)):
    return consent.list_consent_types(db)


@router.get("/patients/{patient_id}/consents", response_model=ConsentSummaryResponse)
def get_consents(patient_id: int, db: Session = Depends(get_db)):
    return _summary(db, patient_id)


@router.post("/patients/{patient_id}/consents", response_model=ConsentSummaryResponse)
def save_consents(patient_id: int, payload: ConsentSave, db: Session = Depends(get_db)):
    consent.save_consents(
        db,
        patient_id,
        [consent.ConsentGrant(c.consent_type_id, c.is_granted) for c in payload.consents],
        otp_verified=consent.has_verified_otp(db, patient_id),
        allow_bypass=payload.allow_bypass,
    )
    return _summary(db, patient_id)


@router.post("/patients/{patient_id}/send-consent-otp", response_model=OtpPending)
def send_consent_otp(patient_id: int, payload: OtpSend, db: Session = Depends(get_db)):
    pending = consent.request_otp(db, patient_id, payload.phone)
    return OtpPending(
        sent_to=pending.sent_to,
        expires_at=pending.expires_at,
        resend_available_at=pending.resend_available_at,
    )


@router.post("/patients/{patient_id}/verify-consent-otp", response_model=OtpVerified)
def verify_consent_otp(patient_id: int, payload: OtpVerify, db: Session = Depends(get_db)):
    return OtpVerified(verified=consent.verify_otp(db, patient_id, payload.otp))
