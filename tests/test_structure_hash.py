import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from quickjournal.structure_hash import structure_hash


class TestStructureHash(unittest.TestCase):
    def test_hash_ignores_key_order(self) -> None:
        a = [{"id": "g1", "name": "Habits", "fields": []}]
        b = [{"fields": [], "name": "Habits", "id": "g1"}]
        self.assertEqual(structure_hash(a), structure_hash(b))

    def test_hash_follows_sibling_order(self) -> None:
        a = [{"id": "g1"}, {"id": "g2"}]
        b = [{"id": "g2"}, {"id": "g1"}]
        self.assertNotEqual(structure_hash(a), structure_hash(b))

    def test_hash_format(self) -> None:
        h = structure_hash([])
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)

    def test_hash_rejects_nan(self) -> None:
        with self.assertRaises(ValueError):
            structure_hash([{"order": float("nan")}])


if __name__ == "__main__":
    unittest.main()
