"""FastAPI routes – investigation catalog, requests, and results."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinicflow.models.database import get_db
from clinicflow.schemas.api import (
    EncounterInvestigationsCreate,
    InvestigationRequestBatch,
    InvestigationRequestResponse,
    InvestigationResultResponse,
    InvestigationTestResponse,
    ParameterResponse,
    ResultsSaved,
    ResultsSubmission,
    StatusUpdate,
)
from clinicflow.services import catalog, requests, results
from clinicflow.services.catalog import CatalogTest

logger = logging.getLogger(__name__)

router = APIRouter()


def _test_response(test: CatalogTest) -> InvestigationTestResponse:
    parameters = None
    if test.parameters:
        parameters = [
            ParameterResponse(parameter=p.name, unit=p.unit, range=p.reference_range)
            for p in test.parameters
        ]
    return InvestigationTestResponse(
        id=test.id,
        name=test.name,
        department=test.department,
        type=test.modality,
        parameters=parameters,
    )


def _request_response(item) -> InvestigationRequestResponse:
    # Provisional entries are dataclasses; validate by attribute, never asdict
    return InvestigationRequestResponse.model_validate(item)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@router.get("/investigation-tests", response_model=list[InvestigationTestResponse])
def list_tests(
    modality: str = "laboratory",
    department: str | None = None,
    q: str | None = None,
    db: Session = Depends(get_db),
):
    return [_test_response(t) for t in catalog.list_tests(db, modality, department, q)]


@router.get("/investigation-tests/departments", response_model=list[str])
def list_departments(modality: str = "laboratory", db: Session = Depends(get_db)):
    return catalog.departments(db, modality)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@router.get("/investigation-requests", response_model=list[InvestigationRequestResponse])
def list_requests(encounter_id: int, db: Session = Depends(get_db)):
    return [_request_response(r) for r in requests.list_requests(db, encounter_id)]


@router.post(
    "/investigation-requests",
    response_model=list[InvestigationRequestResponse],
    status_code=201,
)
def create_requests(payload: InvestigationRequestBatch, db: Session = Depends(get_db)):
    """Batch create; all rows are durable or the whole call fails."""
    return requests.create_request_batch(db, [r.model_dump() for r in payload.requests])


@router.post(
    "/encounters/{encounter_id}/investigations",
    response_model=list[InvestigationRequestResponse],
    status_code=201,
)
def request_investigations(
    encounter_id: int,
    payload: EncounterInvestigationsCreate,
    db: Session = Depends(get_db),
):
    """
    Clinician order. Rows the store could not take come back with a
    ``tmp-`` id and ``provisional: true``; results can still be saved.
    """
    created = requests.request_investigations(
        db,
        encounter_id,
        payload.test_ids,
        payload.other_request,
        payload.request_notes,
        requested_by=payload.requested_by,
        modality=payload.type,
    )
    return [_request_response(r) for r in created]


@router.patch("/investigation-requests/{request_id}", response_model=InvestigationRequestResponse)
def update_request_status(request_id: int, payload: StatusUpdate, db: Session = Depends(get_db)):
    return requests.advance_status(db, request_id, payload.status)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@router.post(
    "/investigation-requests/{request_ref}/results",
    response_model=ResultsSaved,
    status_code=201,
)
def save_results(request_ref: str, payload: ResultsSubmission, db: Session = Depends(get_db)):
    """``request_ref`` is a durable id or a provisional ``tmp-`` id."""
    values = [
        results.EnteredValue(
            value=item.value, parameter=item.parameter, flag=item.flag, notes=item.notes
        )
        for item in payload.results
    ]
    saved = results.save_results(
        db,
        request_ref,
        values,
        entered_by=payload.entered_by,
        additional_notes=payload.additional_notes,
    )
    return ResultsSaved(
        request=InvestigationRequestResponse.model_validate(saved.request),
        results=[InvestigationResultResponse.model_validate(r) for r in saved.results],
        status=saved.request.status,
    )


@router.get(
    "/investigation-requests/{request_id}/results",
    response_model=list[InvestigationResultResponse],
)
def list_results(request_id: int, db: Session = Depends(get_db)):
    return results.list_results(db, request_id)
