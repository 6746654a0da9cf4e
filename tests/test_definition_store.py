import os
import sys
import tempfile
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from definition_store import FileDefinitionStore, MemoryDefinitionStore


DOC = {"name": "Product", "fields": [{"name": "name", "type": "string", "required": True}]}


class TestMemoryDefinitionStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryDefinitionStore()

    def test_read_missing_returns_none(self) -> None:
        self.assertIsNone(self.store.read("Product"))

    def test_write_and_read_are_copies(self) -> None:
        doc = {"name": "Product", "fields": [{"name": "name", "type": "string"}]}
        self.store.write("Product", doc)
        doc["fields"].append({"name": "price", "type": "number"})
        loaded = self.store.read("Product")
        self.assertEqual(len(loaded["fields"]), 1)
        loaded["fields"].clear()
        self.assertEqual(len(self.store.read("Product")["fields"]), 1)

    def test_delete_and_list(self) -> None:
        self.store.write("Product", DOC)
        self.store.write("Order", {**DOC, "name": "Order"})
        self.assertEqual(self.store.list_names(), ["Order", "Product"])
        self.assertTrue(self.store.delete("Order"))
        self.assertFalse(self.store.delete("Order"))
        self.assertEqual(self.store.list_names(), ["Product"])

    def test_invalid_name_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.write("../etc", DOC)


class TestFileDefinitionStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.directory = os.path.join(self._tmp.name, "definitions")
        self.store = FileDefinitionStore(self.directory)

    def test_list_before_directory_exists(self) -> None:
        self.assertEqual(self.store.list_names(), [])
        self.assertIsNone(self.store.read("Product"))

    def test_write_creates_json_file(self) -> None:
        self.store.write("Product", DOC)
        self.assertTrue(os.path.exists(os.path.join(self.directory, "Product.json")))
        self.assertEqual(self.store.read("Product"), DOC)
        self.assertEqual(self.store.list_names(), ["Product"])

    def test_overwrite_leaves_no_temp_files(self) -> None:
        self.store.write("Product", DOC)
        self.store.write("Product", {**DOC, "tableName": "products"})
        self.assertEqual(sorted(os.listdir(self.directory)), ["Product.json"])
        self.assertEqual(self.store.read("Product")["tableName"], "products")

    def test_unreadable_file_raises_value_error(self) -> None:
        os.makedirs(self.directory)
        with open(os.path.join(self.directory, "Broken.json"), "w", encoding="utf-8") as handle:
            handle.write("{not json")
        with self.assertRaises(ValueError):
            self.store.read("Broken")

    def test_non_object_document_raises_value_error(self) -> None:
        os.makedirs(self.directory)
        with open(os.path.join(self.directory, "Listy.json"), "w", encoding="utf-8") as handle:
            handle.write("[1, 2]")
        with self.assertRaises(ValueError):
            self.store.read("Listy")

    def test_delete(self) -> None:
        self.store.write("Product", DOC)
        self.assertTrue(self.store.delete("Product"))
        self.assertFalse(self.store.delete("Product"))
        self.assertIsNone(self.store.read("Product"))

    def test_names_cannot_escape_directory(self) -> None:
        with self.assertRaises(ValueError):
            self.store.path_for("../Product")


if __name__ == "__main__":
    unittest.main()
