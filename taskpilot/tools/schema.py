"""
Argument validation against a tool's JSON Schema.
"""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from taskpilot.utils.logger import Logger

logger = Logger("Schema")

_validators: dict[int, Draft7Validator] = {}


def _validator_for(schema: dict) -> Draft7Validator:
    # Schemas are long-lived dicts owned by their Tool; cache by identity.
    key = id(schema)
    validator = _validators.get(key)
    if validator is None or validator.schema is not schema:
        Draft7Validator.check_schema(schema)
        validator = Draft7Validator(schema)
        _validators[key] = validator
    return validator


def _format_error(error) -> str:
    location = ".".join(str(p) for p in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def validate_arguments(schema: dict, arguments: Any) -> list[str]:
    """
    Validate tool arguments.

    Args:
        schema: The tool's input schema
        arguments: Parsed arguments from the model

    Returns:
        A list of human-readable problems; empty when valid
    """
    if not isinstance(arguments, dict):
        return [f"arguments must be an object, got {type(arguments).__name__}"]

    try:
        validator = _validator_for(schema)
    except SchemaError as e:
        logger.error("Tool declares an invalid input schema", e)
        return [f"invalid tool schema: {e.message}"]

    errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.absolute_path))
    return [_format_error(e) for e in errors]
