"""In-memory record and draft stores."""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, Iterable, List, Tuple

from engine_errors import UniqueViolation
from model_definition import format_ts, utc_now


def _now() -> str:
    return format_ts(utc_now())


class MemoryRecordStore:
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def _check_unique(self, model: str, values: dict, unique_fields: Iterable[str], skip_id: str | None = None) -> None:
        for field in unique_fields or ():
            value = values.get(field)
            if value is None:
                continue
            for record_id, existing in self._records.get(model, {}).items():
                if record_id == skip_id:
                    continue
                if existing.get(field) == value:
                    raise UniqueViolation(f"{field} must be unique", path=field, detail={"field": field})

    def create(self, model: str, values: dict, unique_fields: Iterable[str] = ()) -> dict:
        with self._lock:
            self._check_unique(model, values, unique_fields)
            now = _now()
            record = copy.deepcopy(values)
            record["id"] = str(uuid.uuid4())
            record["createdAt"] = now
            record["updatedAt"] = now
            self._records.setdefault(model, {})[record["id"]] = record
            return copy.deepcopy(record)

    def get(self, model: str, record_id: str) -> dict | None:
        record = self._records.get(model, {}).get(record_id)
        return copy.deepcopy(record) if record else None

    def list(self, model: str) -> List[dict]:
        records = sorted(self._records.get(model, {}).values(), key=lambda r: r.get("createdAt") or "")
        return [copy.deepcopy(r) for r in records]

    def update(self, model: str, record_id: str, changes: dict, unique_fields: Iterable[str] = ()) -> dict:
        with self._lock:
            existing = self._records.get(model, {}).get(record_id)
            if existing is None:
                raise KeyError("record not found")
            merged = {**existing, **copy.deepcopy(changes)}
            self._check_unique(model, merged, unique_fields, skip_id=record_id)
            merged["id"] = record_id
            merged["createdAt"] = existing.get("createdAt")
            merged["updatedAt"] = _now()
            self._records[model][record_id] = merged
            return copy.deepcopy(merged)

    def delete(self, model: str, record_id: str) -> bool:
        with self._lock:
            return self._records.get(model, {}).pop(record_id, None) is not None

    def fetch_owner(self, model: str, record_id: str, owner_field: str) -> Tuple[bool, Any]:
        record = self._records.get(model, {}).get(record_id)
        if record is None:
            return False, None
        return True, record.get(owner_field)


class MemoryDraftStore:
    """Unpublished definition documents, keyed by model name."""

    def __init__(self) -> None:
        self._drafts: Dict[str, dict] = {}

    def list_drafts(self) -> List[dict]:
        items = []
        for name, data in self._drafts.items():
            items.append(
                {
                    "name": name,
                    "updated_at": data["updated_at"],
                    "updated_by": data.get("updated_by"),
                    "published_hash": data.get("published_hash"),
                }
            )
        return sorted(items, key=lambda d: d.get("updated_at") or "", reverse=True)

    def get_draft(self, name: str) -> dict | None:
        data = self._drafts.get(name)
        return copy.deepcopy(data) if data else None

    def upsert_draft(self, name: str, definition: dict, updated_by: str | None = None) -> dict:
        now = _now()
        existing = self._drafts.get(name)
        record = {
            "name": name,
            "definition": copy.deepcopy(definition),
            "created_at": existing.get("created_at") if existing else now,
            "updated_at": now,
            "updated_by": updated_by,
            "published_hash": None,
        }
        self._drafts[name] = record
        return copy.deepcopy(record)

    def mark_published(self, name: str, published_hash: str) -> dict | None:
        data = self._drafts.get(name)
        if not data:
            return None
        data["published_hash"] = published_hash
        data["published_at"] = _now()
        return copy.deepcopy(data)

    def delete_draft(self, name: str) -> bool:
        return self._drafts.pop(name, None) is not None
