"""Model definition types and the JSON document codec.

A definition is parsed once into frozen values; every request works on the
same immutable snapshot, so nothing downstream may mutate it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Tuple


Issue = Dict[str, Any]

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
RESERVED_IDENTITY_COLUMNS = frozenset({"ownerId", "userId", "createdBy"})
RECORD_SYSTEM_KEYS = frozenset({"id", "createdAt", "updatedAt"})
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    TEXT = "text"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


ACTION_ORDER = (Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE)
MUTATING_ACTIONS = frozenset({Action.UPDATE, Action.DELETE})


class Role(str, Enum):
    ADMIN = "Admin"
    MANAGER = "Manager"
    VIEWER = "Viewer"


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def parse_enum(enum_cls, value: Any):
    """Return the enum member for ``value`` or None when it is not one."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def is_model_name(value: Any) -> bool:
    return isinstance(value, str) and bool(_NAME_RE.match(value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise TypeError(f"timestamp must be a string, not {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class FieldSchema:
    name: str
    type: FieldType
    required: bool = False
    unique: bool = False
    default: str | None = None
    relation: str | None = None


@dataclass(frozen=True)
class ModelDefinition:
    name: str
    fields: Tuple[FieldSchema, ...]
    rbac: Mapping[Role, FrozenSet[Action]] = field(default_factory=lambda: MappingProxyType({}))
    table_name: str | None = None
    owner_field: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get_field(self, name: str) -> FieldSchema | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def actions_for(self, role: Any) -> FrozenSet[Action]:
        member = parse_enum(Role, role)
        if member is None:
            return frozenset()
        return self.rbac.get(member, frozenset())

    def with_timestamps(self, created_at: datetime | None, updated_at: datetime | None) -> "ModelDefinition":
        return replace(self, created_at=created_at, updated_at=updated_at)


class DefinitionError(ValueError):
    """Raised when a document cannot be turned into a ModelDefinition."""

    def __init__(self, issues: List[Issue]) -> None:
        message = "; ".join(f"{i.get('path')}: {i.get('message')}" for i in issues) or "invalid definition"
        super().__init__(message)
        self.issues = issues


def _opt_str(doc: dict, key: str, path: str, issues: List[Issue]) -> str | None:
    value = doc.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        issues.append(_issue("DEFINITION_TYPE", f"{key} must be a string", path))
        return None
    return value or None


def _opt_bool(doc: dict, key: str, path: str, issues: List[Issue]) -> bool:
    value = doc.get(key, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        issues.append(_issue("DEFINITION_TYPE", f"{key} must be a boolean", path))
        return False
    return value


def _parse_field(raw: Any, path: str, issues: List[Issue]) -> FieldSchema | None:
    if not isinstance(raw, dict):
        issues.append(_issue("DEFINITION_TYPE", "field must be an object", path))
        return None
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        issues.append(_issue("FIELD_NAME_REQUIRED", "field name must be a non-empty string", f"{path}.name"))
        return None
    ftype = parse_enum(FieldType, raw.get("type"))
    if ftype is None:
        allowed = [t.value for t in FieldType]
        issues.append(_issue("FIELD_TYPE_UNKNOWN", f"field type must be one of {allowed}", f"{path}.type", {"type": raw.get("type")}))
        return None
    default = raw.get("default")
    if default is not None and not isinstance(default, str):
        # Defaults are stored as text; scalar literals from hand-written files are accepted.
        if isinstance(default, bool):
            default = "true" if default else "false"
        elif isinstance(default, (int, float)):
            default = str(default)
        else:
            issues.append(_issue("DEFINITION_TYPE", "default must be a string", f"{path}.default"))
            default = None
    return FieldSchema(
        name=name,
        type=ftype,
        required=_opt_bool(raw, "required", f"{path}.required", issues),
        unique=_opt_bool(raw, "unique", f"{path}.unique", issues),
        default=default,
        relation=_opt_str(raw, "relation", f"{path}.relation", issues),
    )


def _parse_rbac(raw: Any, issues: List[Issue]) -> Mapping[Role, FrozenSet[Action]]:
    if raw is None:
        return MappingProxyType({})
    if not isinstance(raw, dict):
        issues.append(_issue("DEFINITION_TYPE", "rbac must be an object", "rbac"))
        return MappingProxyType({})
    matrix: Dict[Role, FrozenSet[Action]] = {}
    for role_name, actions in raw.items():
        role = parse_enum(Role, role_name)
        if role is None:
            allowed = [r.value for r in Role]
            issues.append(_issue("RBAC_ROLE_UNKNOWN", f"role must be one of {allowed}", f"rbac.{role_name}", {"role": role_name}))
            continue
        if not isinstance(actions, (list, tuple)):
            issues.append(_issue("DEFINITION_TYPE", "rbac actions must be a list", f"rbac.{role_name}"))
            continue
        parsed = set()
        for idx, action_name in enumerate(actions):
            action = parse_enum(Action, action_name)
            if action is None:
                allowed = [a.value for a in Action]
                issues.append(_issue("RBAC_ACTION_UNKNOWN", f"action must be one of {allowed}", f"rbac.{role_name}[{idx}]", {"action": action_name}))
                continue
            parsed.add(action)
        matrix[role] = frozenset(parsed)
    return MappingProxyType(matrix)


def _parse_stamp(doc: dict, key: str, issues: List[Issue]) -> datetime | None:
    value = doc.get(key)
    if value is None:
        return None
    try:
        return parse_ts(value)
    except (TypeError, ValueError):
        issues.append(_issue("DEFINITION_TYPE", f"{key} must be an ISO-8601 timestamp", key))
        return None


def parse_definition(doc: Any) -> ModelDefinition:
    """Build a ModelDefinition from its stored document form."""
    issues: List[Issue] = []
    if not isinstance(doc, dict):
        raise DefinitionError([_issue("DEFINITION_TYPE", "definition must be an object", "$")])

    name = doc.get("name")
    if not isinstance(name, str) or not name.strip():
        issues.append(_issue("MODEL_NAME_REQUIRED", "name must be a non-empty string", "name"))
        name = ""

    raw_fields = doc.get("fields")
    fields: List[FieldSchema] = []
    if not isinstance(raw_fields, list):
        issues.append(_issue("DEFINITION_TYPE", "fields must be a list", "fields"))
    else:
        for idx, raw in enumerate(raw_fields):
            parsed = _parse_field(raw, f"fields[{idx}]", issues)
            if parsed is not None:
                fields.append(parsed)

    rbac = _parse_rbac(doc.get("rbac"), issues)
    table_name = _opt_str(doc, "tableName", "tableName", issues)
    owner_field = _opt_str(doc, "ownerField", "ownerField", issues)
    created_at = _parse_stamp(doc, "createdAt", issues)
    updated_at = _parse_stamp(doc, "updatedAt", issues)

    if issues:
        raise DefinitionError(issues)
    return ModelDefinition(
        name=name,
        fields=tuple(fields),
        rbac=rbac,
        table_name=table_name,
        owner_field=owner_field,
        created_at=created_at,
        updated_at=updated_at,
    )


def definition_to_doc(definition: ModelDefinition) -> dict:
    fields = []
    for f in definition.fields:
        item: Dict[str, Any] = {"name": f.name, "type": f.type.value}
        if f.required:
            item["required"] = True
        if f.unique:
            item["unique"] = True
        if f.default is not None:
            item["default"] = f.default
        if f.relation is not None:
            item["relation"] = f.relation
        fields.append(item)
    rbac = {}
    for role in Role:
        if role in definition.rbac:
            rbac[role.value] = [a.value for a in ACTION_ORDER if a in definition.rbac[role]]
    doc: Dict[str, Any] = {"name": definition.name}
    if definition.table_name:
        doc["tableName"] = definition.table_name
    doc["fields"] = fields
    if definition.owner_field:
        doc["ownerField"] = definition.owner_field
    doc["rbac"] = rbac
    if definition.created_at is not None:
        doc["createdAt"] = format_ts(definition.created_at)
    if definition.updated_at is not None:
        doc["updatedAt"] = format_ts(definition.updated_at)
    return doc


def check_definition(definition: ModelDefinition) -> List[Issue]:
    """Structural invariants that every stored definition must satisfy."""
    issues: List[Issue] = []
    if not definition.name or not _NAME_RE.match(definition.name):
        issues.append(_issue("MODEL_NAME_INVALID", "name must be an identifier", "name", {"name": definition.name}))
    if not definition.fields:
        issues.append(_issue("FIELDS_EMPTY", "at least one field is required", "fields"))
    seen = set()
    for idx, f in enumerate(definition.fields):
        if f.name in seen:
            issues.append(_issue("FIELD_NAME_DUPLICATE", f"duplicate field name: {f.name}", f"fields[{idx}].name"))
        if f.name in RECORD_SYSTEM_KEYS:
            issues.append(_issue("FIELD_NAME_RESERVED", f"{f.name} is assigned by the record store", f"fields[{idx}].name"))
        seen.add(f.name)
    owner = definition.owner_field
    if owner and owner not in seen and owner not in RESERVED_IDENTITY_COLUMNS:
        issues.append(
            _issue(
                "OWNER_FIELD_UNKNOWN",
                "ownerField must name a declared field or a reserved identity column",
                "ownerField",
                {"ownerField": owner, "reserved": sorted(RESERVED_IDENTITY_COLUMNS)},
            )
        )
    return issues
