"""
JSON Schema validation service.

Collects every error rather than failing on the first one, so a caller sees
the complete list of missing or malformed clinical fields at once.
"""

from typing import Any

import jsonschema

from medrecords.errors import ValidationError


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
        location = ".".join(str(part) for part in error.path)
        errors.append(f"{location}: {error.message}" if location else error.message)
    return errors


def require_valid(data: dict[str, Any], schema: dict[str, Any], what: str = "payload") -> None:
    """Raise ValidationError carrying all schema violations, if any."""
    errors = validate_against_schema(data, schema)
    if errors:
        raise ValidationError(f"Invalid {what}", errors=errors)
