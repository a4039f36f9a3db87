"""JSON request payload validation against the bundled request schemas."""

from __future__ import annotations

import copy
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

from .errors import NON_FIELD, ValidationFailed
from .utils import read_json

REQUESTS_SCHEMA_PATH = Path(__file__).resolve().parents[1] / "schemas" / "requests.json"


@lru_cache(maxsize=1)
def _schemas() -> dict[str, Any]:
    return read_json(REQUESTS_SCHEMA_PATH)


def _apply_defaults(schema: dict[str, Any], instance: dict[str, Any]) -> None:
    for key, prop in (schema.get("properties") or {}).items():
        if key not in instance and isinstance(prop, dict) and "default" in prop:
            instance[key] = copy.deepcopy(prop["default"])


def _friendly(error: Any) -> str:
    if error.validator == "type":
        expected = error.validator_value
        if isinstance(expected, list):
            expected = " or ".join(str(item) for item in expected)
        return f"Expected {expected}."
    if error.validator == "maxLength":
        return f"Ensure this field has no more than {error.validator_value} characters."
    if error.validator == "minLength":
        return "This field may not be blank."
    return str(error.message)


def validate_payload(name: str, payload: Any) -> dict[str, Any]:
    """Validate `payload` against the named schema and return it with defaults applied.

    Errors are collected per field, DRF style:
    ``{"command": ["This field is required."]}``.
    """

    schema = _schemas()[name]
    if not isinstance(payload, dict):
        raise ValidationFailed({NON_FIELD: ["Expected a JSON object."]})
    resolved = copy.deepcopy(payload)
    _apply_defaults(schema, resolved)
    errors: dict[str, list[str]] = {}
    for error in sorted(Draft7Validator(schema).iter_errors(resolved), key=lambda e: list(e.path)):
        if error.validator == "required":
            for prop in error.validator_value:
                if prop not in resolved:
                    errors.setdefault(prop, []).append("This field is required.")
            continue
        field = str(error.path[0]) if error.path else NON_FIELD
        message = _friendly(error)
        if message not in errors.get(field, []):
            errors.setdefault(field, []).append(message)
    if errors:
        raise ValidationFailed(errors)
    return resolved
