"""Field-level validation and coercion of record payloads."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple

from model_definition import FieldSchema, FieldType, ModelDefinition, format_ts, parse_ts, utc_now


Issue = Dict[str, Any]

NOW_DEFAULT = "now"
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class Mode(str, Enum):
    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class NormalizedRecord:
    values: Dict[str, Any]
    unique_fields: Tuple[str, ...] = ()


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _as_is(value: Any) -> Any:
    return value


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMBER_RE.match(text):
            raise ValueError(f"not a decimal number: {value!r}")
        number = float(text)
    else:
        raise TypeError(f"cannot read a number from {type(value).__name__}")
    if not math.isfinite(number):
        raise ValueError("number must be finite")
    return number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text == "true":
            return True
        if text == "false":
            return False
    raise ValueError("expected true or false")


def _to_date(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() == NOW_DEFAULT:
        return format_ts(utc_now())
    return format_ts(parse_ts(value))


COERCERS: Dict[FieldType, Callable[[Any], Any]] = {
    FieldType.STRING: _as_is,
    FieldType.TEXT: _as_is,
    FieldType.NUMBER: _to_number,
    FieldType.BOOLEAN: _to_boolean,
    FieldType.DATE: _to_date,
}

_EXPECTED = {
    FieldType.STRING: "a string",
    FieldType.TEXT: "a string",
    FieldType.NUMBER: "a number",
    FieldType.BOOLEAN: "true or false",
    FieldType.DATE: "an ISO-8601 timestamp",
}


def coerce_value(field: FieldSchema, value: Any) -> Any:
    return COERCERS[field.type](value)


def is_missing(value: Any) -> bool:
    return value is None or value == ""


def check_defaults(definition: ModelDefinition) -> List[Issue]:
    """Report declared defaults that cannot be coerced to their field type."""
    issues: List[Issue] = []
    for idx, field in enumerate(definition.fields):
        if field.default is None:
            continue
        try:
            coerce_value(field, field.default)
        except (TypeError, ValueError) as exc:
            issues.append(
                _issue(
                    "INVALID_DEFAULT",
                    f"default for {field.name} is not {_EXPECTED[field.type]}",
                    f"fields[{idx}].default",
                    {"error": str(exc)},
                )
            )
    return issues


def validate_payload(definition: ModelDefinition, data: Any, mode: Mode | str) -> Tuple[List[Issue], NormalizedRecord | None]:
    """Check ``data`` against ``definition`` and return (errors, normalized).

    Every field is visited and every problem reported; ``normalized`` is None
    whenever ``errors`` is non-empty. Keys that are not declared fields are
    dropped. Uniqueness is not checked here: the flagged names travel with the
    normalized record for the record store to enforce.
    """
    mode = Mode(mode)
    errors: List[Issue] = []
    if not isinstance(data, dict):
        return [_issue("INVALID_PAYLOAD", "Record data must be an object", None)], None

    values: Dict[str, Any] = {}
    for field in definition.fields:
        supplied = field.name in data and not is_missing(data.get(field.name))
        if supplied:
            raw = data[field.name]
            try:
                values[field.name] = coerce_value(field, raw)
            except (TypeError, ValueError):
                errors.append(
                    _issue(
                        "TYPE_MISMATCH",
                        f"{field.name} must be {_EXPECTED[field.type]}",
                        field.name,
                        {"type": field.type.value},
                    )
                )
            continue

        if mode is Mode.UPDATE:
            if field.name in data:
                if field.required:
                    errors.append(_issue("MISSING_REQUIRED", f"Required field cannot be cleared: {field.name}", field.name))
                else:
                    values[field.name] = None
            continue

        if field.default is not None:
            try:
                values[field.name] = coerce_value(field, field.default)
            except (TypeError, ValueError):
                errors.append(_issue("INVALID_DEFAULT", f"default for {field.name} is not {_EXPECTED[field.type]}", field.name))
            continue
        if field.required:
            errors.append(_issue("MISSING_REQUIRED", f"Missing required field: {field.name}", field.name))
            continue
        if field.type is FieldType.DATE:
            values[field.name] = format_ts(utc_now())

    if errors:
        return errors, None
    unique_fields = tuple(f.name for f in definition.fields if f.unique)
    return [], NormalizedRecord(values=values, unique_fields=unique_fields)
