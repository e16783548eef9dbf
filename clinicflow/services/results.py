"""
Result capture engine.

Saving results is the only way a request reaches ``results_posted``:

1. a provisional request is first made durable and its temporary id is
   resolved in the registry (this is never rolled back);
2. one result row is built per schema parameter that received a
   non-blank value, or a single row for free-text requests;
3. an empty result set is rejected;
4. rows are written and the request is marked ``results_posted``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicflow.errors import PersistenceError, ValidationError
from clinicflow.models.clinical import InvestigationRequest, InvestigationResult
from clinicflow.services.audit import log_action
from clinicflow.services.requests import (
    CatalogSubject,
    ProvisionalRegistry,
    ProvisionalRequest,
    RequestStatus,
    Subject,
    ensure_forward,
    get_request,
    registry,
    require_staff,
    resolve_ref,
    subject_of,
)

logger = logging.getLogger(__name__)


@dataclass
class EnteredValue:
    """One value typed by the clinician. ``parameter`` is None for free text."""

    value: str | None
    parameter: str | None = None
    flag: str | None = None
    notes: str | None = None

    @property
    def answered(self) -> bool:
        return bool(self.value and self.value.strip())


@dataclass
class SavedResults:
    request: InvestigationRequest
    results: list[InvestigationResult]


def build_result_rows(
    subject: Subject,
    values: list[EnteredValue],
    *,
    entered_by: int,
    additional_notes: str | None = None,
) -> list[InvestigationResult]:
    """
    Shape entered values into result rows according to the request's subject.
    Blank values are unanswered parameters and produce no row.
    """
    if isinstance(subject, CatalogSubject) and subject.parameters:
        answers: dict[str, EnteredValue] = {}
        for entered in values:
            if entered.parameter and entered.answered:
                answers.setdefault(entered.parameter, entered)

        rows = []
        for definition in subject.parameters:
            entered = answers.get(definition.name)
            if entered is None:
                continue
            rows.append(
                InvestigationResult(
                    parameter=definition.name,
                    value=entered.value.strip(),
                    unit=definition.unit,
                    reference_range=definition.reference_range,
                    flag=entered.flag,
                    notes=entered.notes or additional_notes,
                    entered_by=entered_by,
                )
            )
        return rows

    # Free text: custom requests, and catalog tests without a usable schema
    name = subject.display_name
    for entered in values:
        if entered.answered and (not entered.parameter or entered.parameter == name):
            return [
                InvestigationResult(
                    parameter=name,
                    value=entered.value.strip(),
                    flag=entered.flag,
                    notes=entered.notes or additional_notes,
                    entered_by=entered_by,
                )
            ]
    return []


def _make_durable(
    db: Session, entry: ProvisionalRequest, reg: ProvisionalRegistry
) -> InvestigationRequest:
    if entry.durable_id is not None:
        return get_request(db, entry.durable_id)

    row = entry.to_row()
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Could not persist provisional request %s: %s", entry.temp_id, exc)
        raise PersistenceError(
            "Failed to save investigation request; results were not saved"
        ) from exc

    db.refresh(row)
    reg.resolve(entry.temp_id, row.id)
    logger.info("Reconciled provisional request %s -> %s", entry.temp_id, row.id)
    return row


def _post_results(
    db: Session,
    request: InvestigationRequest,
    values: list[EnteredValue],
    *,
    entered_by: int,
    additional_notes: str | None,
) -> SavedResults:
    rows = build_result_rows(
        subject_of(request),
        values,
        entered_by=entered_by,
        additional_notes=additional_notes,
    )
    if not rows:
        raise ValidationError("No results to save - please enter at least one result value")

    target = ensure_forward(request.status, RequestStatus.RESULTS_POSTED.value)
    previous = request.status
    try:
        for row in rows:
            row.request_id = request.id
            db.add(row)
        request.status = target.value
        if additional_notes:
            request.request_notes = additional_notes
        log_action(
            db,
            actor=f"staff:{entered_by}",
            action="results_posted",
            resource_type="InvestigationRequest",
            resource_id=request.id,
            detail={"parameters": [row.parameter for row in rows], "previous_status": previous},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to save results for request %s: %s", request.id, exc)
        raise PersistenceError(f"Failed to save results for request {request.id}") from exc

    db.refresh(request)
    logger.info(
        "Posted %d result(s) for request %s (%s -> %s)",
        len(rows), request.id, previous, request.status,
    )
    return SavedResults(request=request, results=rows)


def save_results(
    db: Session,
    request_ref: int | str,
    values: list[EnteredValue],
    *,
    entered_by: int,
    additional_notes: str | None = None,
    reg: ProvisionalRegistry = registry,
) -> SavedResults:
    """
    Record findings against a request, durable or provisional.

    For a provisional request the reconciliation and the result write run
    under the entry's lock, so no two saves race on an unreconciled id.
    An unknown ``entered_by`` is rejected before anything is made durable.
    """
    require_staff(db, entered_by)
    target = resolve_ref(db, request_ref, reg)
    if isinstance(target, ProvisionalRequest):
        with target.lock:
            request = _make_durable(db, target, reg)
            return _post_results(
                db, request, values, entered_by=entered_by, additional_notes=additional_notes
            )
    return _post_results(
        db, target, values, entered_by=entered_by, additional_notes=additional_notes
    )


def list_results(db: Session, request_id: int) -> list[InvestigationResult]:
    return list(get_request(db, request_id).results)
