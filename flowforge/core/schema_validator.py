"""Structural JSON Schema validation for node outputs.

Supports the subset of JSON Schema that node parameters declare:
``type``, ``properties``, ``required`` and ``items``, recursively. The schema
itself is first checked against a meta-schema with ``jsonschema`` so that a
malformed definition is reported as a validation failure rather than a crash.

Messages are path-qualified (``Path 'profile.id' expected integer, got
string``) and the first violation short-circuits.
"""

import json
from typing import Any

import jsonschema

from flowforge.core.errors import ValidationError

SUPPORTED_TYPES = ("string", "number", "integer", "boolean", "object", "array", "null")

# Meta-schema for the supported dialect (draft-07 flavored)
_META_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "definitions": {
        "node": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": list(SUPPORTED_TYPES)},
                "properties": {
                    "type": "object",
                    "additionalProperties": {"$ref": "#/definitions/node"},
                },
                "required": {"type": "array", "items": {"type": "string"}},
                "items": {"$ref": "#/definitions/node"},
            },
        }
    },
    "$ref": "#/definitions/node",
}

_META_VALIDATOR = jsonschema.Draft7Validator(_META_SCHEMA)


def validate(data: Any, schema: dict[str, Any] | str | None) -> tuple[bool, str | None]:
    """Validate data against a schema.

    Args:
        data: Value to check (usually a node's output payload)
        schema: Schema as a dict or JSON text; empty means "no constraint"

    Returns:
        Tuple of (is_valid, error_message)
    """
    if schema is None or schema == "" or schema == {}:
        return True, None

    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except json.JSONDecodeError as e:
            return False, f"Invalid JSON Schema definition: {e.msg}"
        if not schema:
            return True, None

    try:
        _META_VALIDATOR.validate(schema)
    except jsonschema.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) or "root"
        return False, f"Invalid JSON Schema definition: {e.message} (at {location})"

    error = _check(data, schema, "$")
    return error is None, error


def ensure_valid(
    data: Any, schema: dict[str, Any] | str | None, node_id: str | None = None
) -> None:
    """Raise ValidationError if data does not satisfy schema."""
    ok, error = validate(data, schema)
    if not ok:
        raise ValidationError(f"Schema Violation: {error}", node_id)


def type_name(value: Any) -> str:
    """JSON type name of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "null":
        return value is None
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        if isinstance(value, bool):
            return False
        return isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "string":
        return isinstance(value, str)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return False


def _join(path: str, key: str) -> str:
    return key if path == "$" else f"{path}.{key}"


def _check(data: Any, schema: dict[str, Any], path: str) -> str | None:
    expected = schema.get("type")
    if expected and not _matches_type(data, expected):
        where = "Value" if path == "$" else f"Path '{path}'"
        return f"{where} expected {expected}, got {type_name(data)}"

    if isinstance(data, dict):
        for key in schema.get("required", []):
            if key not in data:
                if path == "$":
                    return f"Required property '{key}' is missing"
                return f"Path '{path}': required property '{key}' is missing"

        for key, sub_schema in schema.get("properties", {}).items():
            if key in data:
                error = _check(data[key], sub_schema, _join(path, key))
                if error:
                    return error

    if isinstance(data, list) and "items" in schema:
        for index, element in enumerate(data):
            item_path = f"[{index}]" if path == "$" else f"{path}[{index}]"
            error = _check(element, schema["items"], item_path)
            if error:
                return error

    return None
