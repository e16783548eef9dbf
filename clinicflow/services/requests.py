"""
Investigation request engine.

Orders are placed against an encounter, either for a catalog test or as a
free-text "other" request. The two shapes are modelled as a tagged subject
(CatalogSubject | CustomSubject) so callers never juggle nullable fields.

When the store is unavailable, a clinician's order is not lost: it is held
in the ProvisionalRegistry under a temporary ``tmp-<hex>`` identifier and
returned to the caller marked provisional. Result capture reconciles that
identifier to a durable one before writing any result rows. Orders the
store rejects as invalid (constraint violations) are never held.

The registry lives in process memory. The API must run as a single worker
process: a ``tmp-`` id issued by one worker is unknown to any other, and
unresolved entries do not survive a restart.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clinicflow.config import settings
from clinicflow.errors import NotFoundError, PersistenceError, StateError, ValidationError
from clinicflow.helpers.time import to_naive_utc, utcnow
from clinicflow.models.clinical import MODALITIES, Encounter, InvestigationRequest, Staff
from clinicflow.services import catalog
from clinicflow.services.catalog import ParameterDefinition

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------

class RequestStatus(str, Enum):
    REQUESTED = "requested"
    NOT_COLLECTED = "not_collected"
    COLLECTED = "collected"
    RESULTS_POSTED = "results_posted"

    @property
    def rank(self) -> int:
        return list(RequestStatus).index(self)


INITIAL_STATUSES = (RequestStatus.REQUESTED, RequestStatus.NOT_COLLECTED)


def ensure_forward(current: str, target: str) -> RequestStatus:
    """Reject any move to an earlier state; staying put is allowed."""
    try:
        current_status = RequestStatus(current)
        target_status = RequestStatus(target)
    except ValueError as exc:
        raise ValidationError(f"Unknown request status: {exc}") from exc
    if target_status.rank < current_status.rank:
        raise StateError(
            f"Request status cannot move back from '{current_status.value}' "
            f"to '{target_status.value}'"
        )
    return target_status


# ---------------------------------------------------------------------------
# Request subject
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CatalogSubject:
    test_id: int
    test_name: str
    parameters: tuple[ParameterDefinition, ...] | None
    kind: str = "catalog"

    @property
    def display_name(self) -> str:
        return self.test_name


@dataclass(frozen=True)
class CustomSubject:
    name: str
    kind: str = "custom"

    @property
    def display_name(self) -> str:
        return self.name


Subject = Union[CatalogSubject, CustomSubject]


def subject_of(request: InvestigationRequest | ProvisionalRequest) -> Subject:
    if isinstance(request, ProvisionalRequest):
        return request.subject
    if request.test_id is not None:
        parameters = catalog.parse_parameters(request.test.parameters) if request.test else None
        return CatalogSubject(request.test_id, request.test_name, parameters)
    return CustomSubject(request.custom_name)


def _subject_columns(subject: Subject) -> dict:
    if isinstance(subject, CatalogSubject):
        return {"test_id": subject.test_id, "custom_name": None, "test_name": subject.test_name}
    return {"test_id": None, "custom_name": subject.name, "test_name": subject.name}


# ---------------------------------------------------------------------------
# Provisional registry
# ---------------------------------------------------------------------------

@dataclass
class ProvisionalRequest:
    """An order the store has not accepted yet, addressed by a temporary id."""

    temp_id: str
    encounter_id: int
    subject: Subject
    department: str | None
    modality: str
    status: str
    request_notes: str | None
    requested_by: int
    date_requested: datetime
    durable_id: int | None = None
    resolved_at: float | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    provisional = True
    results: tuple = ()

    @property
    def id(self) -> str:
        return self.temp_id

    @property
    def test_id(self) -> int | None:
        return getattr(self.subject, "test_id", None)

    @property
    def custom_name(self) -> str | None:
        return self.subject.name if isinstance(self.subject, CustomSubject) else None

    @property
    def test_name(self) -> str:
        return self.subject.display_name

    def to_row(self) -> InvestigationRequest:
        return InvestigationRequest(
            encounter_id=self.encounter_id,
            department=self.department,
            modality=self.modality,
            status=self.status,
            request_notes=self.request_notes,
            requested_by=self.requested_by,
            date_requested=self.date_requested,
            **_subject_columns(self.subject),
        )


class ProvisionalRegistry:
    """
    Indirection table from temporary identifiers to durable ones.

    An identifier is provisional because the registry issued it, not
    because of its shape. A resolved entry is kept for ``retention_seconds``
    so a retry with the old temporary id lands on the durable row; after
    that it is dropped and the old id no longer resolves.
    """

    PREFIX = "tmp-"

    def __init__(self, retention_seconds: float | None = None, clock=time.monotonic):
        if retention_seconds is None:
            retention_seconds = settings.PROVISIONAL_RETENTION_SECONDS
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: dict[str, ProvisionalRequest] = {}
        self._lock = threading.Lock()

    def _prune(self) -> None:
        # Caller holds self._lock
        cutoff = self._clock() - self.retention_seconds
        expired = [
            ref for ref, e in self._entries.items()
            if e.resolved_at is not None and e.resolved_at <= cutoff
        ]
        for ref in expired:
            del self._entries[ref]

    def hold(self, **fields) -> ProvisionalRequest:
        entry = ProvisionalRequest(temp_id=f"{self.PREFIX}{uuid.uuid4().hex}", **fields)
        with self._lock:
            self._prune()
            self._entries[entry.temp_id] = entry
        return entry

    def get(self, ref: str) -> ProvisionalRequest | None:
        with self._lock:
            self._prune()
            return self._entries.get(ref)

    def is_provisional(self, ref: str) -> bool:
        entry = self.get(ref)
        return entry is not None and entry.durable_id is None

    def resolve(self, ref: str, durable_id: int) -> None:
        with self._lock:
            entry = self._entries[ref]
            entry.durable_id = durable_id
            entry.resolved_at = self._clock()

    def durable_id(self, ref: str) -> int | None:
        entry = self.get(ref)
        return entry.durable_id if entry else None

    def pending_for_encounter(self, encounter_id: int) -> list[ProvisionalRequest]:
        with self._lock:
            self._prune()
            return [
                e for e in self._entries.values()
                if e.encounter_id == encounter_id and e.durable_id is None
            ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


registry = ProvisionalRegistry()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_request(db: Session, request_id: int) -> InvestigationRequest:
    row = db.get(InvestigationRequest, request_id)
    if row is None:
        raise NotFoundError(f"InvestigationRequest id={request_id} not found")
    return row


def resolve_ref(
    db: Session, ref: int | str, reg: ProvisionalRegistry = registry
) -> InvestigationRequest | ProvisionalRequest:
    """Turn a caller-supplied identifier into a durable row or a pending entry."""
    entry = reg.get(str(ref))
    if entry is not None:
        return get_request(db, entry.durable_id) if entry.durable_id else entry
    try:
        request_id = int(ref)
    except (TypeError, ValueError):
        raise NotFoundError(f"InvestigationRequest id={ref} not found") from None
    return get_request(db, request_id)


def list_requests(
    db: Session, encounter_id: int, reg: ProvisionalRegistry = registry
) -> list[InvestigationRequest | ProvisionalRequest]:
    """Durable requests newest first, then the encounter's unresolved provisional ones."""
    rows = (
        db.query(InvestigationRequest)
        .filter(InvestigationRequest.encounter_id == encounter_id)
        .order_by(InvestigationRequest.created_at.desc(), InvestigationRequest.id.desc())
        .all()
    )
    return [*rows, *reg.pending_for_encounter(encounter_id)]


def _require_encounter(db: Session, encounter_id: int) -> Encounter:
    encounter = db.get(Encounter, encounter_id)
    if encounter is None:
        raise NotFoundError(f"Encounter id={encounter_id} not found")
    return encounter


def require_staff(db: Session, staff_id: int) -> Staff:
    staff = db.get(Staff, staff_id)
    if staff is None:
        raise NotFoundError(f"Staff id={staff_id} not found")
    return staff


def _check_modality(modality: str | None) -> str:
    value = (modality or "laboratory").strip().lower()
    if value not in MODALITIES:
        raise ValidationError(f"Unknown investigation type '{modality}'")
    return value


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def request_investigations(
    db: Session,
    encounter_id: int,
    test_ids: list[int] | None,
    custom_text: str | None,
    notes: str | None,
    *,
    requested_by: int,
    modality: str = "laboratory",
    reg: ProvisionalRegistry = registry,
) -> list[InvestigationRequest | ProvisionalRequest]:
    """
    Place one order per selected catalog test, plus one free-text order
    when ``custom_text`` is non-blank. Every order starts as not_collected.

    If the store is unavailable the orders are held provisionally and
    returned anyway, so result entry is not blocked on the store. A
    constraint violation is the caller's error and is never held.
    """
    custom = (custom_text or "").strip()
    selections = list(dict.fromkeys(test_ids or []))
    if not selections and not custom:
        raise ValidationError("Select at least one test or enter an 'other' request")

    _require_encounter(db, encounter_id)
    require_staff(db, requested_by)
    custom_modality = _check_modality(modality)

    planned: list[dict] = []
    for test_id in selections:
        test = catalog.get_test(db, test_id)
        planned.append(
            {
                "subject": CatalogSubject(test.id, test.name, test.parameters),
                "department": test.department,
                "modality": test.modality,
            }
        )
    if custom:
        planned.append(
            {"subject": CustomSubject(custom), "department": None, "modality": custom_modality}
        )

    now = utcnow()
    common = {
        "encounter_id": encounter_id,
        "status": RequestStatus.NOT_COLLECTED.value,
        "request_notes": notes or None,
        "requested_by": requested_by,
        "date_requested": now,
    }

    rows = [
        InvestigationRequest(
            department=p["department"],
            modality=p["modality"],
            **_subject_columns(p["subject"]),
            **common,
        )
        for p in planned
    ]
    try:
        db.add_all(rows)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.error("Investigation request(s) for encounter %s violate a constraint: %s",
                     encounter_id, exc.orig)
        raise ValidationError("Investigation request rejected: it references invalid data") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        held = [reg.hold(**p, **common) for p in planned]
        logger.warning(
            "Store unavailable for %d request(s) on encounter %s (%s); holding provisionally as %s",
            len(held), encounter_id, exc.__class__.__name__, [h.temp_id for h in held],
        )
        return held

    for row in rows:
        db.refresh(row)
    logger.info(
        "Created %d investigation request(s) for encounter %s", len(rows), encounter_id
    )
    return rows


def create_request_batch(db: Session, items: list[dict]) -> list[InvestigationRequest]:
    """
    All-or-nothing batch create. Each item names a catalog test by id or by
    name; a name the catalog does not know becomes a free-text request.
    """
    if not items:
        raise ValidationError("Request body is required")

    rows = []
    for item in items:
        _require_encounter(db, item["encounter_id"])
        require_staff(db, item["requested_by"])
        status = item.get("status") or RequestStatus.NOT_COLLECTED.value
        if status not in {s.value for s in INITIAL_STATUSES}:
            raise ValidationError(f"New requests cannot start in status '{status}'")

        test = None
        if item.get("test_id"):
            test = catalog.get_test(db, item["test_id"])
        elif (item.get("test_name") or "").strip():
            test = catalog.find_test_by_name(db, item["test_name"])
        else:
            raise ValidationError("Either test_id or test_name must be provided")

        if test is not None:
            subject: Subject = CatalogSubject(test.id, test.name, test.parameters)
            department, modality = test.department, test.modality
        else:
            subject = CustomSubject(item["test_name"].strip())
            department, modality = item.get("department"), _check_modality(item.get("type"))

        rows.append(
            InvestigationRequest(
                encounter_id=item["encounter_id"],
                department=department,
                modality=modality,
                status=status,
                request_notes=item.get("request_notes"),
                requested_by=item["requested_by"],
                date_requested=to_naive_utc(item.get("date_requested")) or utcnow(),
                **_subject_columns(subject),
            )
        )

    try:
        db.add_all(rows)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to create investigation requests: %s", exc)
        raise PersistenceError("Failed to create investigation requests") from exc

    for row in rows:
        db.refresh(row)
    logger.info("Created %d investigation request(s) in batch", len(rows))
    return rows


def advance_status(db: Session, request_id: int, status: str) -> InvestigationRequest:
    """Move a request forward (e.g. not_collected -> collected)."""
    row = get_request(db, request_id)
    target = ensure_forward(row.status, status)
    if target is RequestStatus.RESULTS_POSTED and row.status != target.value:
        raise StateError("Requests reach 'results_posted' only by saving results")
    if row.status == target.value:
        return row

    previous = row.status
    row.status = target.value
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Failed to update request {request_id}") from exc
    logger.info("Request %s status %s -> %s", request_id, previous, target.value)
    return row
