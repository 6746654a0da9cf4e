import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from modelkit.definition_hash import definition_hash


class TestDefinitionHash(unittest.TestCase):
    def test_hash_ignores_key_order(self) -> None:
        a = {"name": "Task", "ownerField": "ownerId"}
        b = {"ownerField": "ownerId", "name": "Task"}
        self.assertEqual(definition_hash(a), definition_hash(b))

    def test_hash_differs_for_different_content(self) -> None:
        self.assertNotEqual(definition_hash({"name": "Task"}), definition_hash({"name": "Product"}))

    def test_hash_format(self) -> None:
        h = definition_hash({"name": "Task"})
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)

    def test_hash_rejects_nan(self) -> None:
        with self.assertRaises(ValueError):
            definition_hash({"bad": float("nan")})


if __name__ == "__main__":
    unittest.main()
