"""Definition registry: cached, validated access to stored model definitions."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from engine_errors import CorruptDefinition, InvalidDefinition, ModelNotFound
from model_definition import (
    DefinitionError,
    ModelDefinition,
    check_definition,
    definition_to_doc,
    format_ts,
    is_model_name,
    parse_definition,
    utc_now,
)
from modelkit.definition_hash import definition_hash
from records_validation import check_defaults


logger = logging.getLogger("modelkit.registry")

_TICK = timedelta(microseconds=1)


def definition_problems(definition: ModelDefinition) -> List[dict]:
    return check_definition(definition) + check_defaults(definition)


class DefinitionRegistry:
    """Read-through, write-through cache in front of a definition store.

    The cache dict is never mutated in place: writers build a new dict and
    swap the reference under ``_lock``, so readers holding a definition keep
    a consistent snapshot for the rest of their request.
    """

    def __init__(self, store, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or utc_now
        self._cache: Dict[str, ModelDefinition] = {}
        self._lock = threading.Lock()
        self._audit: Dict[str, List[dict]] = {}

    def _swap(self, name: str, definition: ModelDefinition | None) -> None:
        with self._lock:
            cache = dict(self._cache)
            if definition is None:
                cache.pop(name, None)
            else:
                cache[name] = definition
            self._cache = cache

    def _read(self, name: str) -> ModelDefinition:
        try:
            doc = self._store.read(name)
        except ValueError as exc:
            logger.error("definition_corrupt name=%s error=%s", name, exc)
            raise CorruptDefinition(f"Stored definition for {name} is unreadable", path="name", detail={"name": name}) from exc
        if doc is None:
            raise ModelNotFound(f"Model not found: {name}", path="name", detail={"name": name})
        try:
            definition = parse_definition(doc)
        except DefinitionError as exc:
            logger.error("definition_corrupt name=%s error=%s", name, exc)
            raise CorruptDefinition(f"Stored definition for {name} is invalid", path="name", detail={"name": name}) from exc
        problems = definition_problems(definition)
        if problems or definition.name != name:
            logger.error("definition_corrupt name=%s problems=%s", name, problems or "name_mismatch")
            raise CorruptDefinition(f"Stored definition for {name} breaks its invariants", path="name", detail={"name": name})
        return definition

    def load(self, name: str) -> ModelDefinition:
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        if not is_model_name(name):
            raise ModelNotFound("Model not found", path="name")
        definition = self._read(name)
        self._swap(name, definition)
        logger.info("definition_cache_miss name=%s", name)
        return definition

    def exists(self, name: str) -> bool:
        if name in self._cache:
            return True
        if not is_model_name(name):
            return False
        try:
            return self._store.read(name) is not None
        except ValueError:
            return True

    def list(self) -> List[ModelDefinition]:
        definitions = []
        for name in self._store.list_names():
            try:
                definitions.append(self.load(name))
            except (ModelNotFound, CorruptDefinition) as exc:
                logger.warning("definition_load_skipped name=%s error=%s", name, exc.code)
        return definitions

    def save(self, definition: ModelDefinition, actor: dict | None = None) -> ModelDefinition:
        problems = definition_problems(definition)
        if problems:
            raise InvalidDefinition(f"Definition {definition.name or '?'} is invalid", problems)

        previous = self._previous(definition.name)
        now = self._clock()
        if previous is not None and previous.updated_at is not None and now <= previous.updated_at:
            now = previous.updated_at + _TICK
        created_at = previous.created_at if previous is not None and previous.created_at else now
        stored = definition.with_timestamps(created_at, now)

        doc = definition_to_doc(stored)
        self._store.write(stored.name, doc)
        self._swap(stored.name, stored)
        self._record_audit(stored.name, "save", definition_hash(doc), actor)
        logger.info("definition_saved name=%s updated_at=%s", stored.name, format_ts(now))
        return stored

    def update(self, name: str, changes: Dict[str, Any], actor: dict | None = None) -> ModelDefinition:
        current = self.load(name)
        doc = definition_to_doc(current)
        for key, value in (changes or {}).items():
            if key in ("name", "createdAt", "updatedAt"):
                continue
            if value is None:
                doc.pop(key, None)
            else:
                doc[key] = copy.deepcopy(value)
        try:
            updated = parse_definition(doc)
        except DefinitionError as exc:
            raise InvalidDefinition(f"Definition {name} is invalid", exc.issues) from exc
        return self.save(updated, actor=actor)

    def delete(self, name: str, actor: dict | None = None) -> None:
        if not is_model_name(name):
            raise ModelNotFound("Model not found", path="name")
        if not self._store.delete(name):
            self._swap(name, None)
            raise ModelNotFound(f"Model not found: {name}", path="name", detail={"name": name})
        self._swap(name, None)
        self._record_audit(name, "delete", None, actor)
        logger.info("definition_deleted name=%s", name)

    def invalidate(self, name: str) -> None:
        self._swap(name, None)

    def history(self, name: str) -> List[dict]:
        return copy.deepcopy(self._audit.get(name, []))

    def _previous(self, name: str) -> ModelDefinition | None:
        try:
            return self.load(name)
        except ModelNotFound:
            return None
        except CorruptDefinition:
            # A corrupt document is replaced wholesale by a valid save.
            return None

    def _record_audit(self, name: str, action: str, doc_hash: str | None, actor: dict | None) -> None:
        audit = {
            "audit_id": str(uuid.uuid4()),
            "name": name,
            "action": action,
            "definition_hash": doc_hash,
            "actor": copy.deepcopy(actor) if actor else None,
            "at": format_ts(self._clock()),
        }
        with self._lock:
            self._audit = {**self._audit, name: [audit] + self._audit.get(name, [])}
