"""DB-backed definition, record and draft stores."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Tuple

from app.db import execute, fetch_all, fetch_one, get_conn
from engine_errors import UniqueViolation
from model_definition import format_ts, utc_now
from modelkit.definition_hash import definition_hash

logger = logging.getLogger("modelkit.db")


_SCHEMA_SQL = (
    (
        "model_definitions.ensure",
        """
        create table if not exists model_definitions (
          name text primary key,
          document jsonb not null,
          definition_hash text not null,
          updated_at timestamptz not null default now()
        );
        """,
    ),
    (
        "model_records.ensure",
        """
        create table if not exists model_records (
          model text not null,
          record_id text not null,
          data jsonb not null,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now(),
          primary key (model, record_id)
        );
        """,
    ),
    (
        "model_drafts.ensure",
        """
        create table if not exists model_drafts (
          name text primary key,
          definition jsonb not null,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now(),
          updated_by text null,
          published_hash text null,
          published_at timestamptz null
        );
        """,
    ),
)


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _now() -> str:
    return format_ts(utc_now())


def _to_iso(value):
    if isinstance(value, datetime):
        return format_ts(value)
    return value


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def ensure_schema() -> None:
    with get_conn() as conn:
        for query_name, sql in _SCHEMA_SQL:
            execute(conn, sql, query_name=query_name)
    logger.info("schema_ensured tables=%s", [name.split(".")[0] for name, _ in _SCHEMA_SQL])


class DbDefinitionStore:
    def read(self, name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select document from model_definitions where name=%s",
                [name],
                query_name="model_definitions.get",
            )
        if not row:
            return None
        doc = _ensure_json(row["document"])
        if not isinstance(doc, dict):
            raise ValueError(f"{name}: document must be an object")
        return doc

    def write(self, name: str, doc: dict) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into model_definitions (name, document, definition_hash, updated_at)
                values (%s,%s,%s,%s)
                on conflict (name) do update
                  set document = excluded.document,
                      definition_hash = excluded.definition_hash,
                      updated_at = excluded.updated_at
                """,
                [name, _json_dumps(doc), definition_hash(doc), _now()],
                query_name="model_definitions.upsert",
            )

    def delete(self, name: str) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                "delete from model_definitions where name=%s",
                [name],
                query_name="model_definitions.delete",
            )
        return count > 0

    def list_names(self) -> List[str]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select name from model_definitions order by name",
                query_name="model_definitions.list",
            )
        return [r["name"] for r in rows]


def _record_from_row(row: dict) -> dict:
    record = copy.deepcopy(_ensure_json(row["data"]) or {})
    record["id"] = row["record_id"]
    record["createdAt"] = _to_iso(row.get("created_at"))
    record["updatedAt"] = _to_iso(row.get("updated_at"))
    return record


class DbRecordStore:
    """Records for every model in one jsonb table, keyed by (model, record_id)."""

    def _check_unique(self, conn, model: str, values: dict, unique_fields: Iterable[str], skip_id: str | None = None) -> None:
        for field in unique_fields or ():
            value = values.get(field)
            if value is None:
                continue
            row = fetch_one(
                conn,
                """
                select record_id from model_records
                where model=%s and data @> %s::jsonb and record_id <> %s
                limit 1
                """,
                [model, _json_dumps({field: value}), skip_id or ""],
                query_name="model_records.unique_check",
            )
            if row:
                raise UniqueViolation(f"{field} must be unique", path=field, detail={"field": field})

    def create(self, model: str, values: dict, unique_fields: Iterable[str] = ()) -> dict:
        record_id = str(uuid.uuid4())
        now = _now()
        with get_conn() as conn:
            self._check_unique(conn, model, values, unique_fields)
            row = fetch_one(
                conn,
                """
                insert into model_records (model, record_id, data, created_at, updated_at)
                values (%s,%s,%s,%s,%s)
                returning record_id, data, created_at, updated_at
                """,
                [model, record_id, _json_dumps(values), now, now],
                query_name="model_records.insert",
            )
        return _record_from_row(row)

    def get(self, model: str, record_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select record_id, data, created_at, updated_at from model_records where model=%s and record_id=%s",
                [model, record_id],
                query_name="model_records.get",
            )
        return _record_from_row(row) if row else None

    def list(self, model: str) -> List[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select record_id, data, created_at, updated_at
                from model_records
                where model=%s
                order by created_at asc, record_id asc
                """,
                [model],
                query_name="model_records.list",
            )
        return [_record_from_row(r) for r in rows]

    def update(self, model: str, record_id: str, changes: dict, unique_fields: Iterable[str] = ()) -> dict:
        with get_conn() as conn:
            existing = fetch_one(
                conn,
                "select data from model_records where model=%s and record_id=%s for update",
                [model, record_id],
                query_name="model_records.get_for_update",
            )
            if not existing:
                raise KeyError("record not found")
            merged = {**(_ensure_json(existing["data"]) or {}), **changes}
            self._check_unique(conn, model, merged, unique_fields, skip_id=record_id)
            row = fetch_one(
                conn,
                """
                update model_records
                set data=%s, updated_at=%s
                where model=%s and record_id=%s
                returning record_id, data, created_at, updated_at
                """,
                [_json_dumps(merged), _now(), model, record_id],
                query_name="model_records.update",
            )
        return _record_from_row(row)

    def delete(self, model: str, record_id: str) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                "delete from model_records where model=%s and record_id=%s",
                [model, record_id],
                query_name="model_records.delete",
            )
        return count > 0

    def fetch_owner(self, model: str, record_id: str, owner_field: str) -> Tuple[bool, Any]:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select data->%s as owner from model_records where model=%s and record_id=%s",
                [owner_field, model, record_id],
                query_name="model_records.fetch_owner",
            )
        if not row:
            return False, None
        return True, row["owner"]


class DbDraftStore:
    def list_drafts(self) -> List[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select name, updated_at, updated_by, published_hash
                from model_drafts
                order by updated_at desc
                """,
                query_name="model_drafts.list",
            )
        return [{**r, "updated_at": _to_iso(r.get("updated_at"))} for r in rows]

    def get_draft(self, name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select name, definition, created_at, updated_at, updated_by, published_hash, published_at
                from model_drafts
                where name=%s
                """,
                [name],
                query_name="model_drafts.get",
            )
        return _draft_from_row(row) if row else None

    def upsert_draft(self, name: str, definition: dict, updated_by: str | None = None) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into model_drafts (name, definition, updated_at, updated_by, published_hash)
                values (%s,%s,%s,%s,null)
                on conflict (name) do update
                  set definition = excluded.definition,
                      updated_at = excluded.updated_at,
                      updated_by = excluded.updated_by,
                      published_hash = null
                returning name, definition, created_at, updated_at, updated_by, published_hash, published_at
                """,
                [name, _json_dumps(definition), _now(), updated_by],
                query_name="model_drafts.upsert",
            )
        return _draft_from_row(row)

    def mark_published(self, name: str, published_hash: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update model_drafts
                set published_hash=%s, published_at=%s
                where name=%s
                returning name, definition, created_at, updated_at, updated_by, published_hash, published_at
                """,
                [published_hash, _now(), name],
                query_name="model_drafts.mark_published",
            )
        return _draft_from_row(row) if row else None

    def delete_draft(self, name: str) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                "delete from model_drafts where name=%s",
                [name],
                query_name="model_drafts.delete",
            )
        return count > 0


def _draft_from_row(row: dict) -> dict:
    draft = copy.deepcopy(row)
    draft["definition"] = _ensure_json(draft.get("definition"))
    for key in ("created_at", "updated_at", "published_at"):
        if key in draft:
            draft[key] = _to_iso(draft[key])
    return draft
