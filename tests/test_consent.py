"""Tests for the consent / OTP gate."""

from datetime import datetime, timedelta

import pytest

from clinicflow.config import settings
from clinicflow.errors import ConsentError, OtpCooldownError, PersistenceError, ValidationError
from clinicflow.models.clinical import ConsentType, OtpChallenge, Patient
from clinicflow.services import consent
from clinicflow.services.audit import entries_for
from clinicflow.services.consent import ConsentGrant
from clinicflow.services.encryption import encryption

NOW = datetime(2024, 6, 1, 9, 0, 0)


class CapturingSender:
    def __init__(self):
        self.sent = []

    def send(self, phone, code):
        self.sent.append((phone, code))

    @property
    def last_code(self):
        return self.sent[-1][1]


@pytest.fixture
def sender():
    return CapturingSender()


@pytest.fixture
def types(db):
    return {ct.code: ct for ct in db.query(ConsentType)}


def _grants(types, **granted):
    return [ConsentGrant(types[code].id, value) for code, value in granted.items()]


def test_otp_required_only_for_granted_gated_types(types):
    sharing = types["THIRD_PARTY_SHARING"]
    analysis = types["DATA_ANALYSIS"]
    all_types = list(types.values())

    assert consent.otp_required({sharing.id: True}, all_types)
    assert not consent.otp_required({sharing.id: False}, all_types)
    assert not consent.otp_required({analysis.id: True}, all_types)
    assert not consent.otp_required({}, all_types)


def test_save_without_gated_grant_needs_no_otp(db, patient, types):
    saved = consent.save_consents(
        db, patient.id,
        _grants(types, MEDICAL_INFO_RECORDING=True, DATA_ANALYSIS=True),
        otp_verified=False, allow_bypass=False,
    )
    assert len(saved) == 2
    assert all(r.granted and not r.otp_verified and not r.otp_bypassed for r in saved)


def test_gated_grant_without_otp_rejected(db, patient, types):
    with pytest.raises(ConsentError, match="verify OTP"):
        consent.save_consents(
            db, patient.id, _grants(types, THIRD_PARTY_SHARING=True),
            otp_verified=False, allow_bypass=False,
        )
    assert consent.get_consents(db, patient.id).records == []


def test_bypass_is_recorded_and_audited(db, patient, types):
    saved = consent.save_consents(
        db, patient.id,
        _grants(types, MEDICAL_INFO_RECORDING=True, THIRD_PARTY_SHARING=True),
        otp_verified=False, allow_bypass=True,
    )

    by_type = {r.consent_type_id: r for r in saved}
    sharing = by_type[types["THIRD_PARTY_SHARING"].id]
    recording = by_type[types["MEDICAL_INFO_RECORDING"].id]
    assert sharing.otp_bypassed and not sharing.otp_verified
    assert not recording.otp_bypassed

    actions = [e.action for e in entries_for(db, "Patient", patient.id)]
    assert actions == ["consent_save", "consent_otp_bypass"]


def test_verified_otp_marks_gated_records(db, patient, types):
    saved = consent.save_consents(
        db, patient.id, _grants(types, THIRD_PARTY_SHARING=True),
        otp_verified=True, allow_bypass=False,
    )
    assert saved[0].otp_verified and not saved[0].otp_bypassed


def test_revoking_gated_consent_needs_no_otp(db, patient, types):
    consent.save_consents(
        db, patient.id, _grants(types, THIRD_PARTY_SHARING=True),
        otp_verified=False, allow_bypass=True,
    )
    saved = consent.save_consents(
        db, patient.id, _grants(types, THIRD_PARTY_SHARING=False),
        otp_verified=False, allow_bypass=False,
    )
    record = saved[0]
    assert not record.granted
    assert record.revoked_at is not None
    assert not record.otp_bypassed


def test_unknown_consent_type(db, patient):
    with pytest.raises(ValidationError):
        consent.save_consents(
            db, patient.id, [ConsentGrant(999, True)], otp_verified=False, allow_bypass=False
        )


def test_missing_mandatory_listed(db, patient, types):
    summary = consent.get_consents(db, patient.id)
    assert [t.code for t in summary.missing_mandatory] == ["MEDICAL_INFO_RECORDING"]

    consent.save_consents(
        db, patient.id, _grants(types, MEDICAL_INFO_RECORDING=True),
        otp_verified=False, allow_bypass=False,
    )
    assert consent.get_consents(db, patient.id).missing_mandatory == []


def test_request_otp_masks_and_encrypts_phone(db, patient, sender):
    pending = consent.request_otp(db, patient.id, sender=sender, now=NOW)

    assert pending.sent_to == "*********678"
    assert pending.expires_at == NOW + timedelta(seconds=settings.OTP_TTL_SECONDS)
    assert sender.sent[0][0] == "+254712345678"
    assert len(sender.last_code) == settings.OTP_LENGTH

    challenge = db.query(OtpChallenge).one()
    assert "712345678" not in challenge.encrypted_phone
    assert encryption.decrypt(challenge.encrypted_phone) == "+254712345678"
    assert len(challenge.code_digest) == 64


def test_code_not_sent_when_challenge_cannot_be_stored(db, patient, sender, failing_commits):
    failing_commits()
    with pytest.raises(PersistenceError):
        consent.request_otp(db, patient.id, sender=sender, now=NOW)
    failing_commits.disarm()

    assert sender.sent == []
    assert db.query(OtpChallenge).count() == 0


def test_request_otp_requires_phone(db):
    patient = Patient(first_name="No", last_name="Phone")
    db.add(patient)
    db.commit()
    with pytest.raises(ValidationError):
        consent.request_otp(db, patient.id, now=NOW)


def test_resend_cooldown(db, patient, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)

    with pytest.raises(OtpCooldownError) as exc_info:
        consent.request_otp(db, patient.id, sender=sender, now=NOW + timedelta(seconds=20.5))
    assert exc_info.value.retry_after == 40
    assert len(sender.sent) == 1

    later = NOW + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS)
    consent.request_otp(db, patient.id, sender=sender, now=later)
    assert len(sender.sent) == 2


def test_verify_otp(db, patient, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)

    assert not consent.verify_otp(db, patient.id, "000000x", now=NOW)
    assert consent.verify_otp(db, patient.id, sender.last_code, now=NOW)
    assert consent.has_verified_otp(db, patient.id, now=NOW)


def test_resend_invalidates_previous_code(db, patient, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)
    first = sender.last_code
    later = NOW + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS)
    consent.request_otp(db, patient.id, sender=sender, now=later)

    if first != sender.last_code:
        assert not consent.verify_otp(db, patient.id, first, now=later)
    assert consent.verify_otp(db, patient.id, sender.last_code, now=later)


def test_expired_otp_rejected(db, patient, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)
    expired = NOW + timedelta(seconds=settings.OTP_TTL_SECONDS)
    assert not consent.verify_otp(db, patient.id, sender.last_code, now=expired)


def test_too_many_attempts_burn_the_code(db, patient, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)
    for _ in range(settings.OTP_MAX_ATTEMPTS):
        assert not consent.verify_otp(db, patient.id, "wrong", now=NOW)
    assert not consent.verify_otp(db, patient.id, sender.last_code, now=NOW)


def test_verified_otp_is_consumed_by_save(db, patient, types, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)
    consent.verify_otp(db, patient.id, sender.last_code, now=NOW)

    consent.save_consents(
        db, patient.id, _grants(types, THIRD_PARTY_SHARING=True),
        otp_verified=True, allow_bypass=False,
    )

    assert not consent.has_verified_otp(db, patient.id, now=NOW)
    assert not consent.verify_otp(db, patient.id, sender.last_code, now=NOW)


def test_otp_audit_trail(db, patient, sender):
    consent.request_otp(db, patient.id, sender=sender, now=NOW)
    consent.verify_otp(db, patient.id, sender.last_code, now=NOW)

    entries = entries_for(db, "Patient", patient.id)
    assert [e.action for e in entries] == ["otp_sent", "otp_verified"]
    assert entries[0].detail == {"sent_to": "*********678"}
