"""Tests for investigation requests, the status machine and the provisional registry."""

import pytest
from sqlalchemy.exc import IntegrityError

from clinicflow.config import settings
from clinicflow.errors import NotFoundError, PersistenceError, StateError, ValidationError
from clinicflow.models.clinical import InvestigationRequest
from clinicflow.services import requests
from clinicflow.services.requests import (
    CatalogSubject,
    CustomSubject,
    ProvisionalRegistry,
    ProvisionalRequest,
    RequestStatus,
    ensure_forward,
    registry,
    subject_of,
)


def test_status_ranks_follow_lifecycle():
    ranks = [s.rank for s in RequestStatus]
    assert ranks == sorted(ranks)
    assert RequestStatus.RESULTS_POSTED.rank > RequestStatus.COLLECTED.rank


def test_ensure_forward_allows_forward_and_same():
    assert ensure_forward("not_collected", "collected") is RequestStatus.COLLECTED
    assert ensure_forward("collected", "collected") is RequestStatus.COLLECTED


def test_ensure_forward_rejects_backward():
    with pytest.raises(StateError):
        ensure_forward("results_posted", "collected")


def test_ensure_forward_rejects_unknown_status():
    with pytest.raises(ValidationError):
        ensure_forward("collected", "lost")


def test_catalog_request_starts_not_collected(db, encounter, provider, haemogram):
    created = requests.request_investigations(
        db, encounter.id, [haemogram.id], None, "fasting", requested_by=provider.id
    )

    assert len(created) == 1
    row = created[0]
    assert isinstance(row, InvestigationRequest)
    assert row.status == "not_collected"
    assert row.test_id == haemogram.id
    assert row.custom_name is None
    assert row.test_name == "Haemogram"
    assert row.department == "Haematology"
    assert row.request_notes == "fasting"


def test_selection_plus_custom_text(db, encounter, provider, haemogram):
    created = requests.request_investigations(
        db, encounter.id, [haemogram.id], "  Unusual rash biopsy ", None,
        requested_by=provider.id,
    )

    assert len(created) == 2
    custom = created[1]
    assert custom.test_id is None
    assert custom.custom_name == "Unusual rash biopsy"
    assert custom.test_name == "Unusual rash biopsy"
    assert custom.modality == "laboratory"


def test_duplicate_selections_collapse(db, encounter, provider, haemogram):
    created = requests.request_investigations(
        db, encounter.id, [haemogram.id, haemogram.id], None, None, requested_by=provider.id
    )
    assert len(created) == 1


def test_empty_order_rejected(db, encounter, provider):
    with pytest.raises(ValidationError):
        requests.request_investigations(db, encounter.id, [], "   ", None, requested_by=provider.id)
    assert db.query(InvestigationRequest).count() == 0


def test_unknown_encounter_rejected(db, provider, haemogram):
    with pytest.raises(NotFoundError):
        requests.request_investigations(db, 404, [haemogram.id], None, None, requested_by=provider.id)


def test_unknown_test_rejected(db, encounter, provider):
    with pytest.raises(NotFoundError):
        requests.request_investigations(db, encounter.id, [9999], None, None, requested_by=provider.id)


def test_store_failure_holds_requests_provisionally(
    db, encounter, provider, haemogram, failing_commits
):
    failing_commits()
    created = requests.request_investigations(
        db, encounter.id, [haemogram.id], "Unusual rash biopsy", None, requested_by=provider.id
    )
    failing_commits.disarm()

    assert len(created) == 2
    assert all(isinstance(r, ProvisionalRequest) for r in created)
    assert all(r.id.startswith("tmp-") for r in created)
    assert all(r.provisional for r in created)
    assert all(registry.is_provisional(r.id) for r in created)
    assert created[0].test_id == haemogram.id
    assert created[1].custom_name == "Unusual rash biopsy"
    assert db.query(InvestigationRequest).count() == 0


def test_unknown_requester_rejected_and_not_held(db, encounter, haemogram):
    with pytest.raises(NotFoundError, match="Staff"):
        requests.request_investigations(
            db, encounter.id, [haemogram.id], "Skin scraping", None, requested_by=99999
        )

    assert db.query(InvestigationRequest).count() == 0
    assert registry.pending_for_encounter(encounter.id) == []


def test_constraint_violation_is_not_held(db, encounter, provider, haemogram, failing_commits):
    failing_commits(error=IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed")))
    with pytest.raises(ValidationError, match="rejected"):
        requests.request_investigations(
            db, encounter.id, [haemogram.id], None, None, requested_by=provider.id
        )
    failing_commits.disarm()

    assert registry.pending_for_encounter(encounter.id) == []
    assert db.query(InvestigationRequest).count() == 0


def test_batch_unknown_requester_rejected(db, encounter, provider, haemogram):
    with pytest.raises(NotFoundError, match="Staff"):
        requests.create_request_batch(
            db,
            [
                {"encounter_id": encounter.id, "test_id": haemogram.id, "requested_by": provider.id},
                {"encounter_id": encounter.id, "test_id": haemogram.id, "requested_by": 99999},
            ],
        )
    assert db.query(InvestigationRequest).count() == 0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _hold(reg, encounter_id=1):
    return reg.hold(
        encounter_id=encounter_id,
        subject=CustomSubject("Stool culture"),
        department=None,
        modality="laboratory",
        status="not_collected",
        request_notes=None,
        requested_by=1,
        date_requested=None,
    )


def test_resolved_entries_expire_after_retention():
    clock = FakeClock()
    reg = ProvisionalRegistry(retention_seconds=60, clock=clock)
    entry = _hold(reg)
    reg.resolve(entry.temp_id, 42)

    clock.now += 59
    assert reg.durable_id(entry.temp_id) == 42

    clock.now += 1
    assert reg.get(entry.temp_id) is None


def test_unresolved_entries_are_never_expired():
    clock = FakeClock()
    reg = ProvisionalRegistry(retention_seconds=60, clock=clock)
    entry = _hold(reg)

    clock.now += 10_000
    assert reg.is_provisional(entry.temp_id)
    assert reg.pending_for_encounter(1) == [entry]


def test_registry_retention_defaults_to_settings():
    assert ProvisionalRegistry().retention_seconds == settings.PROVISIONAL_RETENTION_SECONDS


def test_list_requests_includes_pending_provisional(
    db, encounter, provider, haemogram, failing_commits
):
    durable = requests.request_investigations(
        db, encounter.id, [haemogram.id], None, None, requested_by=provider.id
    )
    failing_commits()
    held = requests.request_investigations(
        db, encounter.id, [], "Stool culture", None, requested_by=provider.id
    )
    failing_commits.disarm()

    listed = requests.list_requests(db, encounter.id)
    assert [r.id for r in listed] == [durable[0].id, held[0].id]


def test_registry_resolution():
    reg = ProvisionalRegistry()
    entry = reg.hold(
        encounter_id=1,
        subject=CustomSubject("Stool culture"),
        department=None,
        modality="laboratory",
        status="not_collected",
        request_notes=None,
        requested_by=1,
        date_requested=None,
    )

    assert reg.is_provisional(entry.temp_id)
    assert reg.pending_for_encounter(1) == [entry]

    reg.resolve(entry.temp_id, 42)

    assert not reg.is_provisional(entry.temp_id)
    assert reg.durable_id(entry.temp_id) == 42
    assert reg.pending_for_encounter(1) == []
    # Only ids the registry issued count as provisional
    assert not reg.is_provisional("tmp-deadbeef")


def test_resolve_ref(db, encounter, provider, haemogram):
    row = requests.request_investigations(
        db, encounter.id, [haemogram.id], None, None, requested_by=provider.id
    )[0]

    assert requests.resolve_ref(db, row.id) is row
    assert requests.resolve_ref(db, str(row.id)) is row
    with pytest.raises(NotFoundError):
        requests.resolve_ref(db, "tmp-unknown")


def test_subject_of_durable_rows(db, encounter, provider, haemogram):
    catalog_row, custom_row = requests.request_investigations(
        db, encounter.id, [haemogram.id], "Unusual rash biopsy", None, requested_by=provider.id
    )

    subject = subject_of(catalog_row)
    assert isinstance(subject, CatalogSubject)
    assert subject.parameters == haemogram.parameters
    assert subject_of(custom_row) == CustomSubject("Unusual rash biopsy")


def test_batch_binds_known_names_to_catalog(db, encounter, provider):
    rows = requests.create_request_batch(
        db,
        [
            {"encounter_id": encounter.id, "test_name": "esr", "requested_by": provider.id},
            {
                "encounter_id": encounter.id,
                "test_name": "Skin scraping",
                "department": "Dermatology",
                "requested_by": provider.id,
                "status": "requested",
            },
        ],
    )

    assert rows[0].test_name == "ESR"
    assert rows[0].test_id is not None
    assert rows[1].custom_name == "Skin scraping"
    assert rows[1].department == "Dermatology"
    assert rows[1].status == "requested"


def test_batch_is_all_or_nothing(db, encounter, provider, haemogram):
    with pytest.raises(NotFoundError):
        requests.create_request_batch(
            db,
            [
                {"encounter_id": encounter.id, "test_id": haemogram.id, "requested_by": provider.id},
                {"encounter_id": encounter.id, "test_id": 9999, "requested_by": provider.id},
            ],
        )
    assert db.query(InvestigationRequest).count() == 0


def test_batch_rejects_late_initial_status(db, encounter, provider, haemogram):
    with pytest.raises(ValidationError):
        requests.create_request_batch(
            db,
            [
                {
                    "encounter_id": encounter.id,
                    "test_id": haemogram.id,
                    "requested_by": provider.id,
                    "status": "collected",
                }
            ],
        )


def test_batch_store_failure(db, encounter, provider, haemogram, failing_commits):
    failing_commits()
    with pytest.raises(PersistenceError):
        requests.create_request_batch(
            db,
            [{"encounter_id": encounter.id, "test_id": haemogram.id, "requested_by": provider.id}],
        )


def test_advance_status(db, encounter, provider, haemogram):
    row = requests.request_investigations(
        db, encounter.id, [haemogram.id], None, None, requested_by=provider.id
    )[0]

    assert requests.advance_status(db, row.id, "collected").status == "collected"
    with pytest.raises(StateError):
        requests.advance_status(db, row.id, "not_collected")


def test_results_posted_only_via_result_capture(db, encounter, provider, haemogram):
    row = requests.request_investigations(
        db, encounter.id, [haemogram.id], None, None, requested_by=provider.id
    )[0]
    with pytest.raises(StateError):
        requests.advance_status(db, row.id, "results_posted")
