"""Validate submitted input against a step's declared input schema.

A schema maps field names to field rules, for example::

    {"userInput": {"type": "string", "required": True, "maxLength": 500}}

Two modes are supported. Presence mode (used by the public webhook) only
enforces ``required`` and keeps the declared fields that were supplied.
Strict mode (used by the authenticated execution-input route) also checks
each field's type, length, range and allowed values.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class FieldError(BaseModel):
    field: Optional[str] = None
    message: str


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[FieldError] = Field(default_factory=list)
    sanitized_data: Optional[Dict[str, Any]] = None

    def error_dicts(self) -> list[dict[str, Any]]:
        return [error.model_dump() for error in self.errors]


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _to_number(value: Any) -> Optional[float | int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        if math.isnan(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def _check_typed(name: str, rules: Dict[str, Any], value: Any, errors: List[FieldError]) -> Any:
    """Return the sanitized value, appending any rule violations to ``errors``."""
    field_type = rules.get("type")

    if field_type == "string":
        if not isinstance(value, str):
            errors.append(FieldError(field=name, message=f"Field '{name}' must be a string"))
            return None
        min_length = rules.get("minLength")
        max_length = rules.get("maxLength")
        if min_length and len(value) < min_length:
            errors.append(
                FieldError(
                    field=name, message=f"Field '{name}' must be at least {min_length} characters"
                )
            )
        if max_length and len(value) > max_length:
            errors.append(
                FieldError(
                    field=name, message=f"Field '{name}' must be at most {max_length} characters"
                )
            )
        return value.strip()

    if field_type == "number":
        number = _to_number(value)
        if number is None:
            errors.append(FieldError(field=name, message=f"Field '{name}' must be a number"))
            return None
        if rules.get("min") is not None and number < rules["min"]:
            errors.append(
                FieldError(field=name, message=f"Field '{name}' must be at least {rules['min']}")
            )
        if rules.get("max") is not None and number > rules["max"]:
            errors.append(
                FieldError(field=name, message=f"Field '{name}' must be at most {rules['max']}")
            )
        return number

    if field_type == "boolean":
        if not isinstance(value, bool):
            errors.append(FieldError(field=name, message=f"Field '{name}' must be a boolean"))
            return None
        return value

    if field_type == "array":
        if not isinstance(value, list):
            errors.append(FieldError(field=name, message=f"Field '{name}' must be an array"))
            return None
        return value

    if field_type == "object":
        if not isinstance(value, dict):
            errors.append(FieldError(field=name, message=f"Field '{name}' must be an object"))
            return None
        return value

    return value


def validate_input(
    payload: Dict[str, Any], schema: Optional[Dict[str, Any]], strict: bool = False
) -> ValidationResult:
    """Check ``payload`` against ``schema``.

    A missing or non-object schema accepts the payload unchanged. Otherwise
    ``sanitized_data`` holds only declared fields and is ``None`` whenever
    validation fails.
    """
    if not isinstance(schema, dict) or not schema:
        return ValidationResult(is_valid=True, sanitized_data=payload)

    errors: List[FieldError] = []
    sanitized: Dict[str, Any] = {}

    for name, rules in schema.items():
        if not isinstance(rules, dict):
            rules = {}
        value = payload.get(name)

        if rules.get("required") and _is_empty(value):
            errors.append(FieldError(field=name, message=f"Field '{name}' is required"))
            continue

        if not strict:
            if value is not None:
                sanitized[name] = value
            continue

        if _is_empty(value):
            continue

        clean = _check_typed(name, rules, value, errors)
        if clean is not None:
            sanitized[name] = clean

        allowed = rules.get("enum") or rules.get("options")
        if isinstance(allowed, list) and value not in allowed:
            joined = ", ".join(str(option) for option in allowed)
            errors.append(FieldError(field=name, message=f"Field '{name}' must be one of: {joined}"))

    if errors:
        return ValidationResult(is_valid=False, errors=errors)
    return ValidationResult(is_valid=True, sanitized_data=sanitized)
