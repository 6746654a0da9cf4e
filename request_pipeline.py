"""Request pipeline: resolve model, authorize, validate, execute, respond.

Each request walks the states in a fixed order and stops at the first
failure. Authorization always runs before validation so a caller never
learns anything about field validity for an action they may not perform.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from engine_errors import (
    DENY_REASONS,
    EngineError,
    NotOwner,
    PersistenceError,
    RequestCancelled,
    ResourceNotFound,
    ValidationFailed,
)
from model_definition import RECORD_SYSTEM_KEYS, Action, ModelDefinition, parse_enum
from permission_eval import Principal, evaluate, needs_owner_lookup
from records_validation import Mode, NormalizedRecord, is_missing, validate_payload


RESOLVE_MODEL = "resolve_model"
AUTHORIZE = "authorize"
VALIDATE_PAYLOAD = "validate_payload"
EXECUTE = "execute"
RESPOND = "respond"
FAILED = "failed"

_DENY_MESSAGES = {
    "INSUFFICIENT_PERMISSION": "Insufficient permissions for this action",
    "OWNERSHIP_UNKNOWN": "Record ownership could not be determined",
    "NOT_OWNER": "You can only modify your own records",
}

logger = logging.getLogger("modelkit.pipeline")


@dataclass(frozen=True)
class RecordRequest:
    model: str
    action: Action | str
    principal: Principal
    payload: Dict[str, Any] | None = None
    resource_id: str | None = None


@dataclass
class _Run:
    request: RecordRequest
    action: Action | None = None
    definition: ModelDefinition | None = None
    normalized: NormalizedRecord | None = None
    result: Any = None
    trail: List[str] = field(default_factory=list)


def _result(run: _Run, response: dict | None, error: EngineError | None = None) -> dict:
    if error is None:
        return {
            "ok": True,
            "state": RESPOND,
            "trail": list(run.trail),
            "failure": None,
            "errors": [],
            "warnings": [],
            "response": response,
        }
    return {
        "ok": False,
        "state": FAILED,
        "trail": list(run.trail),
        "failure": error.code,
        "status": error.status,
        "errors": error.issues(),
        "warnings": [],
        "response": None,
    }


def _enter(run: _Run, state: str, cancel) -> None:
    if cancel is not None and cancel.is_set():
        raise RequestCancelled("Request cancelled", detail={"state": state})
    run.trail.append(state)


def _resolve_model(run: _Run, registry) -> None:
    run.definition = registry.load(run.request.model)
    run.action = parse_enum(Action, run.request.action)


def _deny(reason: str) -> EngineError:
    return DENY_REASONS[reason](_DENY_MESSAGES[reason], path="action")


def _authorize(run: _Run, records) -> None:
    definition = run.definition
    principal = run.request.principal
    action = run.action if run.action is not None else run.request.action

    base = evaluate(definition, principal, action)
    if not base.allowed and base.reason == "INSUFFICIENT_PERMISSION":
        raise _deny(base.reason)

    owner_value = None
    if needs_owner_lookup(definition, principal, action):
        resource_id = run.request.resource_id
        if resource_id:
            try:
                found, owner_value = records.fetch_owner(definition.name, resource_id, definition.owner_field)
            except EngineError:
                raise
            except Exception as exc:
                logger.error("owner_lookup_failed model=%s error=%s", definition.name, exc)
                raise PersistenceError("Record store failed", path="resource_id") from exc
            if not found:
                raise ResourceNotFound("Record not found", path="resource_id")

    verdict = evaluate(definition, principal, action, owner_value)
    if not verdict.allowed:
        raise _deny(verdict.reason)

    if run.action is Action.CREATE and definition.owner_field and not principal.is_admin:
        supplied = (run.request.payload or {}).get(definition.owner_field) if isinstance(run.request.payload, dict) else None
        if not is_missing(supplied) and str(supplied) != str(principal.id):
            raise NotOwner("You can only create records you own", path=definition.owner_field)


def _validate(run: _Run) -> None:
    mode = Mode.CREATE if run.action is Action.CREATE else Mode.UPDATE
    errors, normalized = validate_payload(run.definition, run.request.payload, mode)
    if errors:
        raise ValidationFailed(errors)
    values = dict(normalized.values)
    owner = run.definition.owner_field
    if owner and run.definition.get_field(owner) is None:
        supplied = run.request.payload.get(owner)
        if not is_missing(supplied):
            values[owner] = str(supplied)
    if owner and run.action is Action.CREATE and is_missing(values.get(owner)):
        values[owner] = run.request.principal.id
    run.normalized = NormalizedRecord(values=values, unique_fields=normalized.unique_fields)


def _execute(run: _Run, records) -> None:
    name = run.definition.name
    resource_id = run.request.resource_id
    action = run.action
    try:
        if action is Action.CREATE:
            run.result = records.create(name, run.normalized.values, run.normalized.unique_fields)
        elif action is Action.READ:
            if resource_id:
                run.result = records.get(name, resource_id)
                if run.result is None:
                    raise ResourceNotFound("Record not found", path="resource_id")
            else:
                run.result = records.list(name)
        elif action is Action.UPDATE:
            if not resource_id:
                raise ResourceNotFound("Record id is required", path="resource_id")
            run.result = records.update(name, resource_id, run.normalized.values, run.normalized.unique_fields)
        else:
            if not resource_id or not records.delete(name, resource_id):
                raise ResourceNotFound("Record not found", path="resource_id")
            run.result = {"id": resource_id}
    except EngineError:
        raise
    except KeyError as exc:
        raise ResourceNotFound("Record not found", path="resource_id") from exc
    except Exception as exc:
        logger.error("record_store_failed model=%s action=%s error=%s", name, action.value, exc)
        raise PersistenceError("Record store failed", path="record") from exc


def shape_record(record: dict) -> dict:
    return {
        "id": record.get("id"),
        "record": {k: v for k, v in record.items() if k not in RECORD_SYSTEM_KEYS},
        "createdAt": record.get("createdAt"),
        "updatedAt": record.get("updatedAt"),
    }


def _respond(run: _Run) -> dict:
    if run.action is Action.DELETE:
        return {"id": run.result["id"], "deleted": True}
    if isinstance(run.result, list):
        return {"records": [shape_record(r) for r in run.result]}
    return shape_record(run.result)


def run_request(request: RecordRequest, deps: dict) -> dict:
    """Drive one record request through the pipeline.

    ``deps`` carries ``registry`` and ``records`` and optionally ``cancel``
    (anything with ``is_set()``); a cancel observed before Execute ends the
    request without touching the record store's write path.
    """
    registry = deps.get("registry")
    records = deps.get("records")
    cancel = deps.get("cancel")
    run = _Run(request=request)

    try:
        _enter(run, RESOLVE_MODEL, cancel)
        _resolve_model(run, registry)
        _enter(run, AUTHORIZE, cancel)
        _authorize(run, records)
        if run.action in (Action.CREATE, Action.UPDATE):
            _enter(run, VALIDATE_PAYLOAD, cancel)
            _validate(run)
        _enter(run, EXECUTE, cancel)
        _execute(run, records)
        run.trail.append(RESPOND)
        return _result(run, _respond(run))
    except EngineError as exc:
        state = run.trail[-1] if run.trail else None
        if exc.server_side:
            logger.error("request_failed model=%s action=%s state=%s code=%s", request.model, request.action, state, exc.code)
        else:
            logger.info("request_failed model=%s action=%s state=%s code=%s", request.model, request.action, state, exc.code)
        return _result(run, None, exc)
