"""
Enrichment of encounter rows for staff-facing lists.

Each encounter row is joined with its patient and provider. A label is
taken from the first source that has one:

1. a patient/provider fragment the source query already embedded;
2. the lookup map built from the patient/staff lists;
3. a placeholder (``Patient #<id>`` / ``Provider #<id>``).

A missing relation only degrades the label; enrichment never raises on it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from clinicflow.helpers.time import age_in_years

logger = logging.getLogger(__name__)


def resolve_first(*candidates: Any) -> Any:
    """Return the first candidate that is not None (None if all are)."""
    return next((c for c in candidates if c is not None), None)


def _fragment(value: Any) -> Mapping | None:
    return value if isinstance(value, Mapping) and value else None


def patient_display_name(patient: Mapping | None) -> str | None:
    if not patient:
        return None
    parts = [patient.get("first_name"), patient.get("last_name")]
    name = " ".join(p.strip() for p in parts if p and p.strip())
    return name or None


def staff_display_name(staff: Mapping | None) -> str | None:
    if not staff:
        return None
    names = [p.strip() for p in (staff.get("first_name"), staff.get("last_name")) if p and p.strip()]
    if not names:
        return None
    title = (staff.get("title") or "").strip()
    return " ".join([title, *names] if title else names)


def _parse_dob(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def index_by_id(rows: Iterable[Mapping]) -> dict[str, Mapping]:
    return {str(row["id"]): row for row in rows if row.get("id") is not None}


def enrich_encounter(
    encounter: Mapping,
    patients: Mapping[str, Mapping],
    staff: Mapping[str, Mapping],
    today: date | None = None,
) -> dict:
    patient_id = encounter.get("patient_id")
    provider_id = encounter.get("provider_id")

    embedded_patient = _fragment(encounter.get("patient"))
    embedded_provider = _fragment(encounter.get("provider"))
    mapped_patient = patients.get(str(patient_id))
    mapped_provider = staff.get(str(provider_id))

    patient_name = resolve_first(
        patient_display_name(embedded_patient),
        patient_display_name(mapped_patient),
    )
    if patient_name is None:
        logger.warning("Encounter %s: no patient record for id %s", encounter.get("id"), patient_id)
        patient_name = f"Patient #{patient_id}"

    provider_name = resolve_first(
        staff_display_name(embedded_provider),
        staff_display_name(mapped_provider),
    )
    if provider_name is None:
        logger.warning("Encounter %s: no staff record for id %s", encounter.get("id"), provider_id)
        provider_name = f"Provider #{provider_id}"

    patient = resolve_first(embedded_patient, mapped_patient) or {}
    return {
        **encounter,
        "patient_name": patient_name,
        "patient_gender": patient.get("gender") or "Unknown",
        "patient_age": age_in_years(_parse_dob(patient.get("dob")), today),
        "patient_phone": patient.get("phone"),
        "provider_name": provider_name,
    }


def enrich_encounters(
    encounters: Iterable[Mapping],
    patients: Iterable[Mapping],
    staff: Iterable[Mapping],
    today: date | None = None,
) -> list[dict]:
    patient_map = index_by_id(patients)
    staff_map = index_by_id(staff)
    return [enrich_encounter(e, patient_map, staff_map, today) for e in encounters]
