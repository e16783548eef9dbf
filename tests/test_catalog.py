"""Tests for the investigation catalog."""

import json

import pytest

from clinicflow.errors import NotFoundError, ValidationError
from clinicflow.models.clinical import ConsentType, InvestigationTest
from clinicflow.services import catalog
from clinicflow.services.catalog import ParameterDefinition, parse_parameters


def test_list_tests_filters_by_modality(db):
    lab = catalog.list_tests(db, "laboratory")
    imaging = catalog.list_tests(db, "imaging")

    assert len(lab) == 11
    assert [t.name for t in imaging] == ["Chest Xray"]
    assert all(t.modality == "laboratory" for t in lab)


def test_list_tests_ordered_by_department_then_name(db):
    tests = catalog.list_tests(db, "laboratory")
    keys = [(t.department, t.name) for t in tests]
    assert keys == sorted(keys)


def test_department_filter_is_case_insensitive(db):
    tests = catalog.list_tests(db, "laboratory", department="haematology")
    assert {t.name for t in tests} == {"Haemogram", "ESR", "Factor V Leiden"}


def test_query_matches_name_or_department(db):
    by_name = catalog.list_tests(db, "laboratory", query="syph")
    by_department = catalog.list_tests(db, "laboratory", query="BIOCHEM")

    assert {t.name for t in by_name} == {"Syphilis VDRL", "Syphilis RPR"}
    assert [t.name for t in by_department] == ["Lipid profile"]


def test_query_with_no_match_is_empty(db):
    assert catalog.list_tests(db, "laboratory", query="zzz-nothing") == []


def test_query_wildcards_are_literal(db):
    assert catalog.list_tests(db, "laboratory", query="%") == []


def test_unknown_modality_rejected(db):
    with pytest.raises(ValidationError):
        catalog.list_tests(db, "ultrasound")


def test_departments(db):
    assert catalog.departments(db, "imaging") == ["Radiology"]
    assert "Microbiology" in catalog.departments(db, "laboratory")


def test_haemogram_parameters_are_typed(haemogram):
    assert haemogram.structured
    assert haemogram.parameters[0] == ParameterDefinition("Hemoglobin", "g/dl", "12-16")
    assert [p.name for p in haemogram.parameters] == [
        "Hemoglobin",
        "WBC Count",
        "Platelet Count",
    ]


def test_empty_unit_becomes_none(db):
    test = catalog.find_test_by_name(db, "HIV test")
    assert test.parameters[0].unit is None
    assert test.parameters[0].reference_range == "Negative/Positive"


def test_get_test_not_found(db):
    with pytest.raises(NotFoundError):
        catalog.get_test(db, 9999)


def test_find_test_by_name_ignores_case(db):
    assert catalog.find_test_by_name(db, "  haemogram ").name == "Haemogram"
    assert catalog.find_test_by_name(db, "Unusual rash biopsy") is None


def test_parse_parameters_rejects_bad_json():
    assert parse_parameters("{not json") is None


def test_parse_parameters_rejects_schema_violation():
    assert parse_parameters(json.dumps([{"unit": "g/dl"}])) is None
    assert parse_parameters(json.dumps({"parameter": "x"})) is None


def test_parse_parameters_empty_list_means_free_text():
    assert parse_parameters("[]") is None
    assert parse_parameters(None) is None


def test_test_with_broken_schema_is_unstructured(db):
    db.add(
        InvestigationTest(
            name="Skin scraping", department="Dermatology", modality="laboratory",
            parameters="not-json",
        )
    )
    db.commit()
    test = catalog.find_test_by_name(db, "Skin scraping")
    assert test.parameters is None
    assert not test.structured


def test_seed_is_idempotent(db):
    catalog.seed_reference_data(db)
    assert db.query(InvestigationTest).count() == 12
    assert db.query(ConsentType).count() == 5
