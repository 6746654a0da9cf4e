import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from model_definition import parse_definition, parse_ts
from records_validation import Mode, check_defaults, validate_payload


PRODUCT = parse_definition(
    {
        "name": "Product",
        "fields": [
            {"name": "name", "type": "string", "required": True},
            {"name": "price", "type": "number", "required": True},
            {"name": "isActive", "type": "boolean", "default": "true"},
        ],
        "rbac": {"Admin": ["create", "read", "update", "delete"], "Viewer": ["read"]},
    }
)

EVENT = parse_definition(
    {
        "name": "Event",
        "fields": [
            {"name": "title", "type": "text", "required": True},
            {"name": "code", "type": "string", "unique": True},
            {"name": "startsAt", "type": "date", "required": True},
            {"name": "seenAt", "type": "date"},
            {"name": "publishedAt", "type": "date", "default": "now"},
        ],
    }
)


def _codes(errors):
    return sorted((e["code"], e["path"]) for e in errors)


class TestValidatePayload(unittest.TestCase):
    def test_product_scenario(self) -> None:
        errors, normalized = validate_payload(PRODUCT, {"name": "Laptop", "price": "999.99"}, Mode.CREATE)
        self.assertEqual(errors, [])
        self.assertEqual(normalized.values, {"name": "Laptop", "price": 999.99, "isActive": True})

    def test_required_enforced_only_on_create(self) -> None:
        errors, normalized = validate_payload(PRODUCT, {"name": "Laptop"}, Mode.CREATE)
        self.assertIsNone(normalized)
        self.assertEqual(_codes(errors), [("MISSING_REQUIRED", "price")])
        errors, normalized = validate_payload(PRODUCT, {"name": "Laptop"}, Mode.UPDATE)
        self.assertEqual(errors, [])
        self.assertEqual(normalized.values, {"name": "Laptop"})

    def test_update_never_applies_defaults(self) -> None:
        _, normalized = validate_payload(PRODUCT, {"price": 5}, "update")
        self.assertEqual(normalized.values, {"price": 5.0})

    def test_update_explicit_null_clears(self) -> None:
        _, normalized = validate_payload(PRODUCT, {"isActive": None}, Mode.UPDATE)
        self.assertEqual(normalized.values, {"isActive": None})

    def test_update_cannot_clear_required(self) -> None:
        for empty in (None, ""):
            errors, normalized = validate_payload(PRODUCT, {"name": empty, "isActive": None}, Mode.UPDATE)
            self.assertIsNone(normalized)
            self.assertEqual(_codes(errors), [("MISSING_REQUIRED", "name")], empty)

    def test_empty_string_counts_as_missing(self) -> None:
        errors, _ = validate_payload(PRODUCT, {"name": "", "price": 1}, Mode.CREATE)
        self.assertEqual(_codes(errors), [("MISSING_REQUIRED", "name")])

    def test_all_errors_collected(self) -> None:
        errors, normalized = validate_payload(PRODUCT, {"price": "cheap", "isActive": "yes"}, Mode.CREATE)
        self.assertIsNone(normalized)
        self.assertEqual(
            _codes(errors),
            [("MISSING_REQUIRED", "name"), ("TYPE_MISMATCH", "isActive"), ("TYPE_MISMATCH", "price")],
        )

    def test_number_rejects_bool_and_non_finite(self) -> None:
        for bad in (True, "nan", "inf", [1]):
            errors, _ = validate_payload(PRODUCT, {"name": "x", "price": bad}, Mode.CREATE)
            self.assertEqual(_codes(errors), [("TYPE_MISMATCH", "price")], bad)

    def test_number_strings_are_plain_decimals(self) -> None:
        for text, expected in (("12", 12.0), (" -3.5 ", -3.5), ("1e3", 1000.0), (".5", 0.5), ("+2.", 2.0)):
            _, normalized = validate_payload(PRODUCT, {"name": "x", "price": text}, Mode.CREATE)
            self.assertEqual(normalized.values["price"], expected, text)
        for bad in ("1_000", "0x10", "1,5", "Infinity", "-"):
            errors, _ = validate_payload(PRODUCT, {"name": "x", "price": bad}, Mode.CREATE)
            self.assertEqual(_codes(errors), [("TYPE_MISMATCH", "price")], bad)

    def test_boolean_strings_case_insensitive(self) -> None:
        _, normalized = validate_payload(PRODUCT, {"name": "x", "price": 1, "isActive": " FALSE "}, Mode.CREATE)
        self.assertIs(normalized.values["isActive"], False)

    def test_unknown_keys_dropped(self) -> None:
        _, normalized = validate_payload(PRODUCT, {"name": "x", "price": 1, "colour": "red", "id": "abc"}, Mode.CREATE)
        self.assertNotIn("colour", normalized.values)
        self.assertNotIn("id", normalized.values)

    def test_non_mapping_payload(self) -> None:
        errors, normalized = validate_payload(PRODUCT, ["Laptop"], Mode.CREATE)
        self.assertIsNone(normalized)
        self.assertEqual(errors[0]["code"], "INVALID_PAYLOAD")

    def test_idempotent_on_normalized_output(self) -> None:
        payload = {"title": "Launch", "code": "L1", "startsAt": "2026-02-03T04:05:06+02:00"}
        _, first = validate_payload(EVENT, payload, Mode.CREATE)
        _, second = validate_payload(EVENT, first.values, Mode.CREATE)
        self.assertEqual(first.values, second.values)
        _, product = validate_payload(PRODUCT, {"name": "Laptop", "price": "999.99"}, Mode.CREATE)
        _, again = validate_payload(PRODUCT, product.values, Mode.CREATE)
        self.assertEqual(product.values, again.values)

    def test_dates_normalized_to_utc(self) -> None:
        _, normalized = validate_payload(EVENT, {"title": "t", "startsAt": "2026-02-03T04:05:06+02:00"}, Mode.CREATE)
        self.assertEqual(normalized.values["startsAt"], "2026-02-03T02:05:06.000000Z")

    def test_optional_date_and_now_default_filled(self) -> None:
        _, normalized = validate_payload(EVENT, {"title": "t", "startsAt": "2026-02-03"}, Mode.CREATE)
        self.assertIsNotNone(parse_ts(normalized.values["seenAt"]))
        self.assertIsNotNone(parse_ts(normalized.values["publishedAt"]))
        self.assertNotIn("code", normalized.values)

    def test_required_date_never_defaulted(self) -> None:
        errors, _ = validate_payload(EVENT, {"title": "t"}, Mode.CREATE)
        self.assertEqual(_codes(errors), [("MISSING_REQUIRED", "startsAt")])

    def test_unique_fields_annotated(self) -> None:
        _, normalized = validate_payload(EVENT, {"title": "t", "startsAt": "2026-02-03", "code": "A"}, Mode.CREATE)
        self.assertEqual(normalized.unique_fields, ("code",))

    def test_invalid_mode_rejected(self) -> None:
        with self.assertRaises(ValueError):
            validate_payload(PRODUCT, {}, "upsert")


class TestCheckDefaults(unittest.TestCase):
    def test_bad_default_reported(self) -> None:
        bad = parse_definition({"name": "Bad", "fields": [{"name": "n", "type": "number", "default": "ten"}]})
        issues = check_defaults(bad)
        self.assertEqual([(i["code"], i["path"]) for i in issues], [("INVALID_DEFAULT", "fields[0].default")])

    def test_good_defaults_pass(self) -> None:
        self.assertEqual(check_defaults(PRODUCT), [])
        self.assertEqual(check_defaults(EVENT), [])


if __name__ == "__main__":
    unittest.main()
