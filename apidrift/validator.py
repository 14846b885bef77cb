"""
Structural validation of observed values against OpenAPI schema objects.

OpenAPI 3.0 schemas are a dialect of JSON Schema draft 4, so they are
translated (``nullable`` mostly) and validated with ``jsonschema``. OpenAPI
3.1 schemas are plain JSON Schema 2020-12. Every validation failure becomes
one :class:`Violation` addressed by a dotted field path such as
``res.body.user.email`` (array indices render as ``[]``).
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from jsonschema import Draft4Validator, Draft202012Validator
from jsonschema.exceptions import ValidationError

from apidrift.enums import ViolationKind

REQUEST = "request"
RESPONSE = "response"

_NESTED_SCHEMA_LISTS = ("allOf", "anyOf", "oneOf", "prefixItems")
_NESTED_SCHEMAS = ("items", "not", "additionalProperties", "contains", "if", "then", "else")
_NESTED_SCHEMA_MAPS = ("properties", "patternProperties", "$defs", "definitions")


@dataclass(frozen=True)
class Violation:
    field_path: str
    kind: ViolationKind
    message: str
    expected: Any = None
    actual: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_path": self.field_path,
            "kind": self.kind.value,
            "message": self.message,
            "expected": self.expected,
            "actual": self.actual
        }


def json_type(value: Any) -> str:
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


def to_json_schema(schema: Any, direction: Optional[str] = None) -> Any:
    """
    Translate an OpenAPI schema object into JSON Schema.

    Args:
        schema: Dereferenced OpenAPI schema object
        direction: REQUEST or RESPONSE; read-only properties are not required
            in requests and write-only properties are not required in responses

    Returns:
        Equivalent JSON Schema
    """
    if not isinstance(schema, dict):
        return schema

    result = {}
    for key, value in schema.items():
        if key in _NESTED_SCHEMA_LISTS and isinstance(value, list):
            result[key] = [to_json_schema(item, direction) for item in value]
        elif key in _NESTED_SCHEMAS and isinstance(value, dict):
            result[key] = to_json_schema(value, direction)
        elif key in _NESTED_SCHEMA_MAPS and isinstance(value, dict):
            result[key] = {name: to_json_schema(sub, direction) for name, sub in value.items()}
        elif key == "nullable":
            continue
        else:
            result[key] = value

    if schema.get("nullable") is True:
        declared = result.get("type")
        if isinstance(declared, str):
            result["type"] = [declared, "null"]
        elif isinstance(declared, list) and "null" not in declared:
            result["type"] = declared + ["null"]
        if isinstance(result.get("enum"), list) and None not in result["enum"]:
            result["enum"] = result["enum"] + [None]

    skip_flag = {REQUEST: "readOnly", RESPONSE: "writeOnly"}.get(direction)
    if skip_flag and isinstance(result.get("required"), list):
        properties = schema.get("properties") or {}
        required = [
            name for name in result["required"]
            if not (isinstance(properties.get(name), dict) and properties[name].get(skip_flag))
        ]
        if required:
            result["required"] = required
        else:
            del result["required"]

    return result


def render_field_path(location: str, parts: Iterable[Any]) -> str:
    path = location
    for part in parts:
        if isinstance(part, int):
            path += "[]"
        else:
            path += f".{part}"
    return path


def _violations_for(error: ValidationError, location: str) -> List[Violation]:
    base = render_field_path(location, error.absolute_path)
    instance = error.instance

    if error.validator == "required" and isinstance(instance, dict):
        return [
            Violation(
                field_path=f"{base}.{name}",
                kind=ViolationKind.MISSING_FIELD,
                message=f"Required property '{name}' is missing.",
                expected="present",
                actual="missing"
            )
            for name in error.validator_value if name not in instance
        ]

    if error.validator == "additionalProperties" and isinstance(instance, dict):
        properties = error.schema.get("properties") or {}
        patterns = error.schema.get("patternProperties") or {}
        extras = sorted(
            name for name in instance
            if name not in properties and not any(re.search(p, name) for p in patterns)
        )
        return [
            Violation(
                field_path=f"{base}.{name}",
                kind=ViolationKind.EXTRA_FIELD,
                message=f"Property '{name}' is not declared.",
                expected="absent",
                actual=json_type(instance[name])
            )
            for name in extras
        ]

    if error.validator == "type":
        return [Violation(
            field_path=base,
            kind=ViolationKind.TYPE_MISMATCH,
            message=f"Expected type {error.validator_value} but found {json_type(instance)}.",
            expected=error.validator_value,
            actual=json_type(instance)
        )]

    if error.validator == "enum":
        return [Violation(
            field_path=base,
            kind=ViolationKind.ENUM_MISMATCH,
            message=f"Value {instance!r} is not one of {error.validator_value!r}.",
            expected=error.validator_value,
            actual=instance
        )]

    return [Violation(
        field_path=base,
        kind=ViolationKind.CONSTRAINT_VIOLATION,
        message=error.message,
        expected=error.validator,
        actual=json_type(instance)
    )]


def validate_value(schema: Dict[str, Any], value: Any, location: str,
                   openapi_31: bool = False) -> List[Violation]:
    """
    Validate a value against an already translated JSON Schema.

    Args:
        schema: JSON Schema (see :func:`to_json_schema`)
        value: Observed value
        location: Field path prefix, e.g. ``"res.body"``
        openapi_31: Validate with draft 2020-12 instead of draft 4

    Returns:
        Violations in a stable order, one per (field path, kind)
    """
    validator_cls = Draft202012Validator if openapi_31 else Draft4Validator
    validator = validator_cls(schema)
    errors = sorted(
        validator.iter_errors(value),
        key=lambda e: ([str(p) for p in e.absolute_path], str(e.validator))
    )

    violations = []
    seen = set()
    for error in errors:
        for violation in _violations_for(error, location):
            key = (violation.field_path, violation.kind)
            if key not in seen:
                seen.add(key)
                violations.append(violation)
    return violations
