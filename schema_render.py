"""Postgres table DDL for a model definition."""

from __future__ import annotations

import re
from typing import List

from model_definition import FieldSchema, FieldType, ModelDefinition
from records_validation import NOW_DEFAULT, coerce_value


_COLUMN_TYPES = {
    FieldType.STRING: "text",
    FieldType.TEXT: "text",
    FieldType.NUMBER: "double precision",
    FieldType.BOOLEAN: "boolean",
    FieldType.DATE: "timestamptz",
}


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def table_name_for(definition: ModelDefinition) -> str:
    if definition.table_name:
        return definition.table_name
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", definition.name).lower()


def _default_sql(field: FieldSchema) -> str | None:
    if field.default is None:
        return None
    if field.type is FieldType.DATE and field.default.strip().lower() == NOW_DEFAULT:
        return "now()"
    value = coerce_value(field, field.default)
    if field.type is FieldType.BOOLEAN:
        return "true" if value else "false"
    if field.type is FieldType.NUMBER:
        return repr(value)
    return _quote_literal(str(value))


def _column_sql(field: FieldSchema) -> str:
    parts = [_quote_ident(field.name), _COLUMN_TYPES[field.type]]
    if field.required:
        parts.append("not null")
    if field.unique:
        parts.append("unique")
    default = _default_sql(field)
    if default is not None:
        parts.append(f"default {default}")
    return " ".join(parts)


def render_table_ddl(definition: ModelDefinition) -> str:
    columns: List[str] = ['"id" text primary key']
    owner = definition.owner_field
    if owner and definition.get_field(owner) is None:
        columns.append(f"{_quote_ident(owner)} text not null")
    columns.extend(_column_sql(f) for f in definition.fields)
    columns.append('"created_at" timestamptz not null default now()')
    columns.append('"updated_at" timestamptz not null default now()')
    body = ",\n  ".join(columns)
    return f"create table if not exists {_quote_ident(table_name_for(definition))} (\n  {body}\n);\n"
