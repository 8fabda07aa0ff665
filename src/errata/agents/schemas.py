"""JSON Schema validation for agent inputs and outputs."""

from __future__ import annotations

from typing import Any, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from ..errors import AgentValidationError

__all__ = ["OBJECT_SCHEMA", "validate_payload", "object_schema"]

OBJECT_SCHEMA: Mapping[str, Any] = {"type": "object"}

_VALIDATORS: dict[int, tuple[Mapping[str, Any], Draft202012Validator]] = {}


def object_schema(
    properties: Mapping[str, Any],
    required: tuple[str, ...] = (),
    *,
    additional: bool = True,
) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": dict(properties)}
    if required:
        schema["required"] = list(required)
    if not additional:
        schema["additionalProperties"] = False
    return schema


def _validator_for(schema: Mapping[str, Any]) -> Draft202012Validator:
    cached = _VALIDATORS.get(id(schema))
    if cached is not None and cached[0] is schema:
        return cached[1]
    Draft202012Validator.check_schema(schema)
    validator = Draft202012Validator(schema)
    _VALIDATORS[id(schema)] = (schema, validator)
    return validator


def validate_payload(agent_name: str, kind: str, schema: Mapping[str, Any] | None, value: Any) -> Any:
    """Return ``value`` unchanged if it satisfies ``schema``.

    Raises:
        AgentValidationError: With the most relevant violation and its path.
    """
    if schema is None:
        return value
    error = best_match(_validator_for(schema).iter_errors(value))
    if error is not None:
        raise AgentValidationError(agent_name, kind, error.message, tuple(error.absolute_path))
    return value
