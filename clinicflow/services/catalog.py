"""
Investigation catalog – read-only lookup of test definitions.

Parameter schemas are stored as JSON text. They are deserialized here,
once per distinct string, into ParameterDefinition tuples; everything
downstream works with the typed form. A schema that does not parse or
validate is treated as "no structured schema" and the test falls back to
free-text result capture.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from clinicflow.errors import NotFoundError, ValidationError
from clinicflow.models.clinical import MODALITIES, ConsentType, InvestigationTest
from clinicflow.schemas.catalog import (
    DEFAULT_CONSENT_TYPES,
    DEFAULT_INVESTIGATION_TESTS,
    PARAMETER_LIST_SCHEMA,
)
from clinicflow.services.validation import validate_against_schema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParameterDefinition:
    name: str
    unit: str | None = None
    reference_range: str | None = None


@dataclass(frozen=True)
class CatalogTest:
    id: int
    name: str
    department: str
    modality: str
    parameters: tuple[ParameterDefinition, ...] | None

    @property
    def structured(self) -> bool:
        return bool(self.parameters)


@lru_cache(maxsize=512)
def parse_parameters(raw: str | None) -> tuple[ParameterDefinition, ...] | None:
    """Deserialize a stored parameter schema; None when there is no usable one."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Unparseable parameter schema (%s); using free-text capture", exc)
        return None

    errors = validate_against_schema(data, PARAMETER_LIST_SCHEMA)
    if errors:
        logger.warning("Invalid parameter schema: %s; using free-text capture", "; ".join(errors))
        return None
    if not data:
        return None

    return tuple(
        ParameterDefinition(
            name=item["parameter"],
            unit=item.get("unit") or None,
            reference_range=item.get("range") or None,
        )
        for item in data
    )


def to_catalog_test(row: InvestigationTest) -> CatalogTest:
    return CatalogTest(
        id=row.id,
        name=row.name,
        department=row.department,
        modality=row.modality,
        parameters=parse_parameters(row.parameters),
    )


def _check_modality(modality: str) -> str:
    normalized = (modality or "").strip().lower()
    if normalized not in MODALITIES:
        raise ValidationError(
            f"Unknown modality '{modality}'; expected one of {', '.join(MODALITIES)}"
        )
    return normalized


def list_tests(
    db: Session,
    modality: str,
    department: str | None = None,
    query: str | None = None,
) -> list[CatalogTest]:
    """
    Tests of one modality, optionally narrowed to a department and a
    case-insensitive substring of name or department. No match is an
    empty list, not an error.
    """
    q = db.query(InvestigationTest).filter(
        InvestigationTest.modality == _check_modality(modality)
    )
    if department:
        q = q.filter(func.lower(InvestigationTest.department) == department.strip().lower())
    if query and query.strip():
        needle = query.strip()
        q = q.filter(
            or_(
                InvestigationTest.name.icontains(needle, autoescape=True),
                InvestigationTest.department.icontains(needle, autoescape=True),
            )
        )
    rows = q.order_by(InvestigationTest.department, InvestigationTest.name).all()
    return [to_catalog_test(row) for row in rows]


def departments(db: Session, modality: str) -> list[str]:
    rows = (
        db.query(InvestigationTest.department)
        .filter(InvestigationTest.modality == _check_modality(modality))
        .distinct()
        .order_by(InvestigationTest.department)
        .all()
    )
    return [department for (department,) in rows]


def get_test(db: Session, test_id: int) -> CatalogTest:
    row = db.get(InvestigationTest, test_id)
    if row is None:
        raise NotFoundError(f"InvestigationTest id={test_id} not found")
    return to_catalog_test(row)


def find_test_by_name(db: Session, name: str) -> CatalogTest | None:
    row = (
        db.query(InvestigationTest)
        .filter(func.lower(InvestigationTest.name) == name.strip().lower())
        .first()
    )
    return to_catalog_test(row) if row else None


# ---------------------------------------------------------------------------
# Reference data seeding
# ---------------------------------------------------------------------------

def seed_reference_data(db: Session) -> None:
    """Load the default catalog and consent types into empty tables."""
    if db.query(InvestigationTest).count() == 0:
        db.add_all(InvestigationTest(**test) for test in DEFAULT_INVESTIGATION_TESTS)
        logger.info("Seeded %d investigation tests", len(DEFAULT_INVESTIGATION_TESTS))
    if db.query(ConsentType).count() == 0:
        db.add_all(ConsentType(**ct) for ct in DEFAULT_CONSENT_TYPES)
        logger.info("Seeded %d consent types", len(DEFAULT_CONSENT_TYPES))
    db.commit()
