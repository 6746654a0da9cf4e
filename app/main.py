"""FastAPI app exposing model definitions and record CRUD."""

from __future__ import annotations

import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import threading
import time

import anyio

from app.auth import SupabaseAuthMiddleware, auth_disabled
from app.db import get_db_ms, get_db_stats, reset_db_stats
from app.stores import MemoryDraftStore, MemoryRecordStore
from definition_registry import DefinitionRegistry
from definition_store import FileDefinitionStore, MemoryDefinitionStore
from engine_errors import EngineError
from model_definition import Action, is_model_name
from model_engine import ModelEngine, describe
from permission_eval import Principal
from records_validation import Mode
from request_pipeline import RecordRequest


logger = logging.getLogger("modelkit")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
DEFINITIONS_DIR = os.getenv("MODELKIT_DEFINITIONS_DIR", "").strip()
SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
SUPABASE_AUD = os.getenv("SUPABASE_JWT_AUDIENCE", "").strip() or None
DISABLE_AUTH = auth_disabled()
REQ_SLOW_MS = float(os.getenv("MODELKIT_REQ_SLOW_MS", "250"))
_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("MODELKIT_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS
logger.info("auth_disabled=%s supabase_url=%s use_db=%s", DISABLE_AUTH, SUPABASE_URL, USE_DB)

if USE_DB:
    from app.stores_db import DbDefinitionStore, DbDraftStore, DbRecordStore, ensure_schema

    definition_store = DbDefinitionStore()
    records = DbRecordStore()
    drafts = DbDraftStore()
else:
    definition_store = FileDefinitionStore(DEFINITIONS_DIR) if DEFINITIONS_DIR else MemoryDefinitionStore()
    records = MemoryRecordStore()
    drafts = MemoryDraftStore()

registry = DefinitionRegistry(definition_store)
engine = ModelEngine(registry, records)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if USE_DB:
        ensure_schema()
    yield


app = FastAPI(title="modelkit", lifespan=lifespan)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_ms = get_db_ms()
    logger.info(
        "%s %s %s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        total_ms,
        auth_ms,
        db_ms,
        get_db_stats().get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            total_ms,
            db_ms,
            response.status_code,
        )
    response.headers["X-Req-MS"] = f"{total_ms:.1f}"
    response.headers["X-DB-MS"] = f"{db_ms:.1f}"
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    return _issues_response([{"code": code, "message": message, "path": path, "detail": detail}], status=status)


def _issues_response(errors: list, status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200, headers: dict | None = None) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status, headers=headers)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.server_side:
        logger.error("engine_error path=%s code=%s error=%s", request.url.path, exc.code, exc)
    return _issues_response(exc.issues(), status=exc.status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", status=500)


async def _safe_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


def _resolve_principal(request: Request) -> Principal | JSONResponse:
    if DISABLE_AUTH:
        return Principal(
            id=request.headers.get("X-Principal-Id") or "test-user",
            role=request.headers.get("X-Principal-Role") or "Admin",
        )
    user = getattr(request.state, "user", None)
    if not user or not user.get("id"):
        return _error_response("AUTH_REQUIRED", "Authenticated user required", status=401)
    return Principal(id=str(user["id"]), role=user.get("role") or "")


def _actor(principal: Principal) -> dict:
    return {"id": principal.id, "role": principal.role}


def _require_admin(request: Request) -> Principal | JSONResponse:
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    if not principal.is_admin:
        return _error_response("INSUFFICIENT_PERMISSION", "Admin role required", "role", status=403)
    return principal


def _check_name(name: str) -> JSONResponse | None:
    if not is_model_name(name):
        return _error_response("MODEL_NAME_INVALID", "Model name must be an identifier", "name", {"name": name})
    return None


def _definition_payload(definition) -> tuple[dict, dict]:
    described = describe(definition)
    return described, {"ETag": f'"{described["definition_hash"]}"'}


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if not DISABLE_AUTH:
    if not SUPABASE_URL:
        raise RuntimeError("SUPABASE_URL is required for auth")
    app.add_middleware(SupabaseAuthMiddleware, supabase_url=SUPABASE_URL, audience=SUPABASE_AUD)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


# Definitions


@app.get("/models")
async def list_models(request: Request):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    return _ok_response({"models": [describe(d) for d in engine.list_definitions()]})


@app.get("/models/{name}")
async def get_model(name: str, request: Request):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    payload, headers = _definition_payload(engine.get_definition(name))
    return _ok_response(payload, headers=headers)


@app.put("/models/{name}")
async def save_model(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    bad_name = _check_name(name)
    if bad_name:
        return bad_name
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_DEFINITION", "Definition must be an object", "definition")
    body.setdefault("name", name)
    if body.get("name") != name:
        return _error_response("NAME_MISMATCH", "Definition name must match the URL", "name", {"name": body.get("name")})
    saved = engine.save_definition(body, actor=_actor(principal))
    payload, headers = _definition_payload(saved)
    return _ok_response(payload, headers=headers)


@app.patch("/models/{name}")
async def update_model(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_DEFINITION", "Changes must be an object", "definition")
    updated = engine.update_definition(name, body, actor=_actor(principal))
    payload, headers = _definition_payload(updated)
    return _ok_response(payload, headers=headers)


@app.delete("/models/{name}")
async def delete_model(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    engine.delete_definition(name, actor=_actor(principal))
    return _ok_response({"name": name, "deleted": True})


@app.get("/models/{name}/schema")
async def model_schema(name: str, request: Request):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    return PlainTextResponse(engine.render_schema(name), media_type="application/sql")


@app.get("/models/{name}/history")
async def model_history(name: str, request: Request):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    return _ok_response({"name": name, "history": registry.history(name)})


@app.post("/models/{name}/authorize")
async def authorize_model_action(name: str, request: Request):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_PAYLOAD", "Body must be an object")
    verdict = engine.authorize(name, principal, body.get("action"), body.get("owner_value"))
    return _ok_response({"allowed": verdict.allowed, "reason": verdict.reason})


@app.post("/models/{name}/validate")
async def validate_model_payload(name: str, request: Request):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_PAYLOAD", "Body must be an object")
    try:
        mode = Mode(body.get("mode") or Mode.CREATE.value)
    except ValueError:
        return _error_response("MODE_INVALID", "mode must be create or update", "mode", {"mode": body.get("mode")})
    errors, normalized = engine.validate_payload(name, body.get("record"), mode)
    if errors:
        return _issues_response(errors, status=400)
    return _ok_response({"record": normalized.values, "unique_fields": list(normalized.unique_fields)})


# Drafts


@app.get("/drafts")
async def list_drafts(request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    return _ok_response({"drafts": drafts.list_drafts()})


@app.get("/drafts/{name}")
async def get_draft(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    draft = drafts.get_draft(name)
    if not draft:
        return _error_response("DRAFT_NOT_FOUND", "Draft not found", "name", {"name": name}, status=404)
    return _ok_response({"draft": draft})


@app.put("/drafts/{name}")
async def put_draft(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    bad_name = _check_name(name)
    if bad_name:
        return bad_name
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_DEFINITION", "Draft must be an object", "definition")
    draft = drafts.upsert_draft(name, body, updated_by=principal.id)
    return _ok_response({"draft": draft})


@app.delete("/drafts/{name}")
async def delete_draft(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    if not drafts.delete_draft(name):
        return _error_response("DRAFT_NOT_FOUND", "Draft not found", "name", {"name": name}, status=404)
    return _ok_response({"name": name, "deleted": True})


@app.post("/drafts/{name}/publish")
async def publish_draft(name: str, request: Request):
    principal = _require_admin(request)
    if isinstance(principal, JSONResponse):
        return principal
    draft = drafts.get_draft(name)
    if not draft:
        return _error_response("DRAFT_NOT_FOUND", "Draft not found", "name", {"name": name}, status=404)
    doc = dict(draft.get("definition") or {})
    doc["name"] = name
    saved = engine.save_definition(doc, actor=_actor(principal))
    payload, headers = _definition_payload(saved)
    published = drafts.mark_published(name, payload["definition_hash"])
    logger.info("draft_published name=%s hash=%s", name, payload["definition_hash"])
    return _ok_response({**payload, "draft": published}, headers=headers)


# Records


async def _run_record_request(request: Request, record_request: RecordRequest, success_status: int = 200) -> JSONResponse:
    cancel = threading.Event()
    if await request.is_disconnected():
        cancel.set()
    result = await anyio.to_thread.run_sync(engine.handle, record_request, cancel)
    if not result["ok"]:
        return _issues_response(result["errors"], status=result["status"])
    return _ok_response(result["response"], warnings=result["warnings"], status=success_status)


async def _record_request(request: Request, name: str, action: Action, resource_id: str | None = None, with_body: bool = False):
    principal = _resolve_principal(request)
    if isinstance(principal, JSONResponse):
        return principal
    payload = None
    if with_body:
        body = await _safe_json(request)
        payload = body.get("record") if isinstance(body, dict) else None
    record_request = RecordRequest(model=name, action=action, principal=principal, payload=payload, resource_id=resource_id)
    success_status = 201 if action is Action.CREATE else 200
    return await _run_record_request(request, record_request, success_status)


@app.get("/crud/{name}")
async def list_records(name: str, request: Request):
    return await _record_request(request, name, Action.READ)


@app.post("/crud/{name}")
async def create_record(name: str, request: Request):
    return await _record_request(request, name, Action.CREATE, with_body=True)


@app.get("/crud/{name}/{record_id}")
async def get_record(name: str, record_id: str, request: Request):
    return await _record_request(request, name, Action.READ, resource_id=record_id)


@app.put("/crud/{name}/{record_id}")
async def update_record(name: str, record_id: str, request: Request):
    return await _record_request(request, name, Action.UPDATE, resource_id=record_id, with_body=True)


@app.delete("/crud/{name}/{record_id}")
async def delete_record(name: str, record_id: str, request: Request):
    return await _record_request(request, name, Action.DELETE, resource_id=record_id)
