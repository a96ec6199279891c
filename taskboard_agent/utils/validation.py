"""
Validation Utilities for tool-call arguments

Parses the raw arguments a model attached to a tool call and validates them
against the capability's JSON Schema.
"""

from typing import Any, Dict, List, Optional, Union
import json

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from taskboard_agent.utils.exceptions import InvalidArgumentsError, ConfigurationError
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# VALIDATION RESULTS
# ============================================================================

class ValidationResult:
    """Result of a validation check."""

    def __init__(self, valid: bool, errors: Optional[List[Dict[str, Any]]] = None):
        self.valid = valid
        self.errors = errors or []

    def __bool__(self) -> bool:
        return self.valid

    def __str__(self) -> str:
        if self.valid:
            return "Validation passed"
        return f"Validation failed: {'; '.join(e['message'] for e in self.errors)}"


# ============================================================================
# SCHEMA CHECKS
# ============================================================================

def check_schema(name: str, schema: Dict[str, Any]) -> None:
    """Reject malformed parameter schemas at registration time."""
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ConfigurationError(f"capabilities.{name}.parameter_schema", e.message)


def _violation_path(error) -> str:
    path = ".".join(str(p) for p in error.absolute_path)
    if error.validator == "required" and isinstance(error.instance, dict):
        # "'title' is a required property" -> point at the missing field
        missing = [f for f in error.validator_value if f not in error.instance]
        if missing:
            return ".".join(filter(None, [path, missing[0]]))
    return path


def validate_schema(schema: Dict[str, Any], instance: Any) -> ValidationResult:
    """
    Validate an already-decoded instance against a JSON Schema.

    Returns:
        ValidationResult whose errors are ``{path, message, validator}`` dicts
    """
    validator = Draft7Validator(schema)
    errors = [
        {
            "path": _violation_path(error),
            "message": error.message,
            "validator": error.validator,
        }
        for error in sorted(validator.iter_errors(instance), key=lambda e: list(e.absolute_path))
    ]
    return ValidationResult(valid=not errors, errors=errors)


def parse_arguments(name: str, raw: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """
    Decode raw tool-call arguments into a dict.

    Raises:
        InvalidArgumentsError: arguments are not a JSON object
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidArgumentsError(
                name, [{"path": "", "message": f"arguments are not valid JSON: {e.msg}", "validator": "json"}]
            )
        if isinstance(decoded, dict):
            return decoded
    raise InvalidArgumentsError(
        name, [{"path": "", "message": "arguments must be a JSON object", "validator": "type"}]
    )


def validate_arguments(name: str, schema: Dict[str, Any], raw: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """
    Parse and validate tool-call arguments.

    Args:
        name: Capability name (for error reporting)
        schema: Capability parameter schema
        raw: Raw arguments from the model

    Returns:
        Decoded arguments

    Raises:
        InvalidArgumentsError: with the list of schema violations
    """
    args = parse_arguments(name, raw)
    result = validate_schema(schema, args)
    if not result:
        logger.debug(f"[VALIDATION] {name}: {result}")
        raise InvalidArgumentsError(name, result.errors)
    return args
