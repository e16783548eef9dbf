"""
Reference data for the investigation catalog and consent types.

The catalog stores each test's parameter schema serialized as JSON text.
PARAMETER_LIST_SCHEMA is the contract those strings are validated against
when they are deserialized at the catalog boundary.
"""

import json

PARAMETER_LIST_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Investigation parameter schema",
    "description": "Ordered list of result parameters captured for a test.",
    "type": "array",
    "items": {
        "type": "object",
        "required": ["parameter"],
        "properties": {
            "parameter": {"type": "string", "minLength": 1},
            "unit": {"type": "string"},
            "range": {"type": "string"},
        },
    },
}


def _params(*triples: tuple[str, str, str]) -> str:
    return json.dumps(
        [{"parameter": name, "unit": unit, "range": rng} for name, unit, rng in triples]
    )


DEFAULT_INVESTIGATION_TESTS: list[dict] = [
    {
        "name": "Haemogram",
        "department": "Haematology",
        "modality": "laboratory",
        "parameters": _params(
            ("Hemoglobin", "g/dl", "12-16"),
            ("WBC Count", "/cmm", "4000-11000"),
            ("Platelet Count", "/cmm", "150000-450000"),
        ),
    },
    {
        "name": "ESR",
        "department": "Haematology",
        "modality": "laboratory",
        "parameters": _params(("ESR", "mm/hr", "0-20")),
    },
    {
        "name": "Factor V Leiden",
        "department": "Haematology",
        "modality": "laboratory",
        "parameters": _params(("Factor V Leiden", "", "Normal/Abnormal")),
    },
    {
        "name": "Lipid profile",
        "department": "Biochemistry",
        "modality": "laboratory",
        "parameters": _params(
            ("Total Cholesterol", "mg/dl", "<200"),
            ("HDL", "mg/dl", ">40"),
            ("LDL", "mg/dl", "<100"),
            ("Triglycerides", "mg/dl", "<150"),
        ),
    },
    {
        "name": "Malaria antigen",
        "department": "Microbiology",
        "modality": "laboratory",
        "parameters": _params(("Malaria Antigen", "", "Negative/Positive")),
    },
    {
        "name": "Syphilis VDRL",
        "department": "Microbiology",
        "modality": "laboratory",
        "parameters": _params(("VDRL", "", "Non-reactive/Reactive")),
    },
    {
        "name": "HIV test",
        "department": "Microbiology",
        "modality": "laboratory",
        "parameters": _params(("HIV", "", "Negative/Positive")),
    },
    {
        "name": "Urinalysis, dipstick",
        "department": "Chemistry",
        "modality": "laboratory",
        "parameters": _params(
            ("Protein", "", "Negative"),
            ("Glucose", "", "Negative"),
            ("Ketones", "", "Negative"),
        ),
    },
    {
        "name": "Syphilis RPR",
        "department": "Microbiology",
        "modality": "laboratory",
        "parameters": _params(("RPR", "", "Non-reactive/Reactive")),
    },
    {
        "name": "Hpylori antibody",
        "department": "Microbiology",
        "modality": "laboratory",
        "parameters": _params(("H. pylori IgG", "", "Negative/Positive")),
    },
    {
        "name": "Conjunctival test",
        "department": "Ophthalmology",
        "modality": "laboratory",
        "parameters": _params(("Conjunctival swab", "", "Normal/Abnormal")),
    },
    {
        "name": "Chest Xray",
        "department": "Radiology",
        "modality": "imaging",
        "parameters": _params(("Chest X-ray findings", "", "Normal/Abnormal")),
    },
]


DEFAULT_CONSENT_TYPES: list[dict] = [
    {
        "code": "MEDICAL_INFO_RECORDING",
        "name": "Medical information recording",
        "description": "Consent to have medical information recorded in the electronic health record system.",
        "is_mandatory": True,
        "requires_otp": False,
    },
    {
        "code": "DATA_ANALYSIS",
        "name": "Data analysis",
        "description": "Consent to use de-identified, aggregated data for analysis and research purposes.",
        "is_mandatory": False,
        "requires_otp": False,
    },
    {
        "code": "RESEARCH_CONTACT",
        "name": "Research contact",
        "description": "Consent that the care provider may make contact about clinical research initiatives.",
        "is_mandatory": False,
        "requires_otp": False,
    },
    {
        "code": "SMS_NOTIFICATIONS",
        "name": "SMS notifications",
        "description": "Consent to receive SMS notifications about appointments, test results, and health reminders.",
        "is_mandatory": False,
        "requires_otp": False,
    },
    {
        "code": "THIRD_PARTY_SHARING",
        "name": "Third-party sharing",
        "description": "Consent to share medical records with authorized third parties for insurance claims and referrals.",
        "is_mandatory": False,
        "requires_otp": True,
    },
]
