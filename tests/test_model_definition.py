import os
import sys
import unittest
from datetime import datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from model_definition import (
    Action,
    DefinitionError,
    FieldType,
    Role,
    check_definition,
    definition_to_doc,
    format_ts,
    parse_definition,
    parse_ts,
)


def _task_doc() -> dict:
    return {
        "name": "Task",
        "fields": [
            {"name": "title", "type": "string", "required": True},
            {"name": "ownerId", "type": "string"},
            {"name": "due", "type": "date"},
        ],
        "ownerField": "ownerId",
        "rbac": {"Admin": ["read", "create", "delete", "update"], "Manager": ["create", "read", "update"]},
    }


class TestParseDefinition(unittest.TestCase):
    def test_parse_builds_enums(self) -> None:
        definition = parse_definition(_task_doc())
        self.assertEqual(definition.name, "Task")
        self.assertEqual(definition.fields[0].type, FieldType.STRING)
        self.assertTrue(definition.fields[0].required)
        self.assertEqual(definition.owner_field, "ownerId")
        self.assertEqual(definition.actions_for("Manager"), frozenset({Action.CREATE, Action.READ, Action.UPDATE}))
        self.assertEqual(definition.actions_for(Role.ADMIN), frozenset(Action))

    def test_unknown_role_gets_no_actions(self) -> None:
        definition = parse_definition(_task_doc())
        self.assertEqual(definition.actions_for("Viewer"), frozenset())
        self.assertEqual(definition.actions_for("Owner"), frozenset())

    def test_rbac_is_read_only(self) -> None:
        definition = parse_definition(_task_doc())
        with self.assertRaises(TypeError):
            definition.rbac[Role.VIEWER] = frozenset({Action.READ})

    def test_unknown_field_type_reported(self) -> None:
        doc = _task_doc()
        doc["fields"][0]["type"] = "integer"
        with self.assertRaises(DefinitionError) as ctx:
            parse_definition(doc)
        codes = [i["code"] for i in ctx.exception.issues]
        self.assertIn("FIELD_TYPE_UNKNOWN", codes)

    def test_unknown_rbac_entries_reported(self) -> None:
        doc = _task_doc()
        doc["rbac"] = {"Owner": ["read"], "Viewer": ["reed"]}
        with self.assertRaises(DefinitionError) as ctx:
            parse_definition(doc)
        codes = sorted(i["code"] for i in ctx.exception.issues)
        self.assertEqual(codes, ["RBAC_ACTION_UNKNOWN", "RBAC_ROLE_UNKNOWN"])

    def test_non_object_rejected(self) -> None:
        with self.assertRaises(DefinitionError):
            parse_definition(["Task"])

    def test_scalar_defaults_stored_as_text(self) -> None:
        doc = {
            "name": "Product",
            "fields": [
                {"name": "isActive", "type": "boolean", "default": True},
                {"name": "price", "type": "number", "default": 10},
            ],
        }
        definition = parse_definition(doc)
        self.assertEqual(definition.fields[0].default, "true")
        self.assertEqual(definition.fields[1].default, "10")


class TestDefinitionDoc(unittest.TestCase):
    def test_round_trip(self) -> None:
        doc = _task_doc()
        doc["createdAt"] = "2026-01-02T03:04:05.000006Z"
        doc["updatedAt"] = "2026-01-02T03:04:05.000007Z"
        again = parse_definition(definition_to_doc(parse_definition(doc)))
        self.assertEqual(again, parse_definition(doc))

    def test_actions_emitted_in_canonical_order(self) -> None:
        doc = definition_to_doc(parse_definition(_task_doc()))
        self.assertEqual(doc["rbac"]["Admin"], ["create", "read", "update", "delete"])

    def test_unset_optional_keys_omitted(self) -> None:
        doc = definition_to_doc(parse_definition({"name": "Note", "fields": [{"name": "body", "type": "text"}]}))
        self.assertNotIn("tableName", doc)
        self.assertNotIn("ownerField", doc)
        self.assertNotIn("createdAt", doc)
        self.assertEqual(doc["fields"], [{"name": "body", "type": "text"}])


class TestCheckDefinition(unittest.TestCase):
    def test_valid_definition_has_no_issues(self) -> None:
        self.assertEqual(check_definition(parse_definition(_task_doc())), [])

    def test_duplicate_fields_and_empty(self) -> None:
        doc = {"name": "Dup", "fields": [{"name": "a", "type": "string"}, {"name": "a", "type": "text"}]}
        codes = [i["code"] for i in check_definition(parse_definition(doc))]
        self.assertEqual(codes, ["FIELD_NAME_DUPLICATE"])
        empty = parse_definition({"name": "Empty", "fields": []})
        self.assertEqual([i["code"] for i in check_definition(empty)], ["FIELDS_EMPTY"])

    def test_owner_field_must_resolve(self) -> None:
        doc = _task_doc()
        doc["ownerField"] = "assignee"
        codes = [i["code"] for i in check_definition(parse_definition(doc))]
        self.assertEqual(codes, ["OWNER_FIELD_UNKNOWN"])

    def test_reserved_owner_column_accepted(self) -> None:
        doc = {"name": "Memo", "fields": [{"name": "body", "type": "text"}], "ownerField": "createdBy"}
        self.assertEqual(check_definition(parse_definition(doc)), [])

    def test_record_id_cannot_be_owner(self) -> None:
        doc = {"name": "Note", "fields": [{"name": "body", "type": "text"}], "ownerField": "id"}
        codes = [i["code"] for i in check_definition(parse_definition(doc))]
        self.assertEqual(codes, ["OWNER_FIELD_UNKNOWN"])

    def test_store_assigned_keys_not_declarable(self) -> None:
        doc = {
            "name": "Note",
            "fields": [{"name": "id", "type": "string"}, {"name": "updatedAt", "type": "date"}],
            "ownerField": "id",
        }
        issues = check_definition(parse_definition(doc))
        self.assertEqual(
            [(i["code"], i["path"]) for i in issues],
            [("FIELD_NAME_RESERVED", "fields[0].name"), ("FIELD_NAME_RESERVED", "fields[1].name")],
        )

    def test_invalid_model_name(self) -> None:
        doc = {"name": "bad name", "fields": [{"name": "a", "type": "string"}]}
        codes = [i["code"] for i in check_definition(parse_definition(doc))]
        self.assertEqual(codes, ["MODEL_NAME_INVALID"])


class TestTimestamps(unittest.TestCase):
    def test_format_uses_microseconds_and_z(self) -> None:
        value = datetime(2026, 3, 4, 5, 6, 7, 8, tzinfo=timezone.utc)
        self.assertEqual(format_ts(value), "2026-03-04T05:06:07.000008Z")

    def test_parse_accepts_z_and_naive(self) -> None:
        self.assertEqual(parse_ts("2026-03-04T05:06:07Z"), datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc))
        self.assertEqual(parse_ts("2026-03-04T05:06:07"), datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc))

    def test_parse_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            parse_ts("yesterday")
        with self.assertRaises(TypeError):
            parse_ts(12)


if __name__ == "__main__":
    unittest.main()
