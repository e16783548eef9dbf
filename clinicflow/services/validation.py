"""
JSON Schema validation service.

Collects every error rather than failing on the first one, each prefixed
with the JSON path of the offending element.
"""

from typing import Any

import jsonschema


def validate_against_schema(data: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate a decoded JSON document against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.path)))
    messages = []
    for error in errors:
        path = "/".join(str(p) for p in error.path)
        messages.append(f"{path}: {error.message}" if path else error.message)
    return messages
