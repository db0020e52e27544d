"""JSON Schema checks for workflow variables."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from .errors import CompilationError, InputValidationError


def check_variable_schema(schema: Mapping[str, Any]) -> None:
    """Reject a malformed variable schema at save time."""
    if not schema:
        return
    try:
        Draft202012Validator.check_schema(dict(schema))
    except SchemaError as exc:
        raise CompilationError(f"Invalid variable schema: {exc.message}") from exc


def validate_variables(schema: Mapping[str, Any], variables: Dict[str, Any]) -> None:
    """Raise :class:`InputValidationError` listing every schema violation."""
    if not schema:
        return
    validator = Draft202012Validator(dict(schema))
    errors = sorted(validator.iter_errors(variables), key=lambda e: [str(p) for p in e.path])
    if not errors:
        return
    problems = [
        {"path": "/".join(str(p) for p in error.path), "message": error.message}
        for error in errors
    ]
    raise InputValidationError(
        f"Input does not match the variable schema: {errors[0].message}",
        details={"errors": problems},
    )
