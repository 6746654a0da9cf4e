"""Engine-facing operations a transport binds to."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from definition_registry import DefinitionRegistry
from engine_errors import InvalidDefinition
from model_definition import DefinitionError, ModelDefinition, definition_to_doc, parse_definition
from modelkit.definition_hash import definition_hash
from permission_eval import Principal, Verdict, evaluate
from records_validation import Mode, NormalizedRecord, validate_payload
from request_pipeline import RecordRequest, run_request
from schema_render import render_table_ddl


def coerce_definition(value: ModelDefinition | dict) -> ModelDefinition:
    if isinstance(value, ModelDefinition):
        return value
    try:
        return parse_definition(value)
    except DefinitionError as exc:
        raise InvalidDefinition("Definition is invalid", exc.issues) from exc


def describe(definition: ModelDefinition) -> dict:
    doc = definition_to_doc(definition)
    return {"definition": doc, "definition_hash": definition_hash(doc)}


class ModelEngine:
    def __init__(self, registry: DefinitionRegistry, records=None) -> None:
        self.registry = registry
        self.records = records

    def get_definition(self, name: str) -> ModelDefinition:
        return self.registry.load(name)

    def save_definition(self, definition: ModelDefinition | dict, actor: dict | None = None) -> ModelDefinition:
        return self.registry.save(coerce_definition(definition), actor=actor)

    def update_definition(self, name: str, changes: Dict[str, Any], actor: dict | None = None) -> ModelDefinition:
        return self.registry.update(name, changes, actor=actor)

    def list_definitions(self) -> List[ModelDefinition]:
        return self.registry.list()

    def delete_definition(self, name: str, actor: dict | None = None) -> None:
        self.registry.delete(name, actor=actor)

    def authorize(self, name: str, principal: Principal, action: str, owner_value: Any = None) -> Verdict:
        return evaluate(self.registry.load(name), principal, action, owner_value)

    def validate_payload(self, name: str, payload: Any, mode: Mode | str) -> Tuple[List[dict], NormalizedRecord | None]:
        return validate_payload(self.registry.load(name), payload, mode)

    def render_schema(self, name: str) -> str:
        return render_table_ddl(self.registry.load(name))

    def handle(self, request: RecordRequest, cancel=None) -> dict:
        return run_request(request, {"registry": self.registry, "records": self.records, "cancel": cancel})
