import itertools
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

from app.stores import MemoryJournalBackend
from sync_boundary import SyncError


TODAY = "2024-05-10"


def _clock() -> datetime:
    return datetime(2024, 5, 10, 8, 45, tzinfo=timezone.utc)


def _ids(prefix: str):
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


def _group(group_id: str, name: str, fields: list | None = None) -> dict:
    return {"id": group_id, "name": name, "order": 0, "fields": fields or []}


WATER = {
    "id": "f1",
    "groupId": "g1",
    "name": "Water",
    "order": 0,
    "fieldTypes": [
        {"id": "n1", "fieldId": "f1", "kind": "NUMBER", "order": 0, "dataOptions": {"min": 0}},
        {"id": "c1", "fieldId": "f1", "kind": "CHECK", "order": 10, "dataOptions": {}},
    ],
}


class TestStructureVersions(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = MemoryJournalBackend(clock=_clock, id_factory=_ids("s"))

    async def test_no_structure(self) -> None:
        with self.assertRaises(SyncError) as ctx:
            await self.backend.fetch_structure(TODAY)
        self.assertEqual(ctx.exception.status, 404)
        with self.assertRaises(SyncError) as ctx:
            await self.backend.fetch_structure("May 10")
        self.assertEqual(ctx.exception.status, 400)

    async def test_save_without_tombstones_updates_in_place(self) -> None:
        first = await self.backend.save_structure({"groups": [_group("g1", "Habits")], "currentDate": "2024-05-01"})
        second = await self.backend.save_structure({"groups": [_group("g1", "Daily")], "currentDate": TODAY})
        self.assertEqual(first["structureId"], second["structureId"])
        self.assertEqual(len(self.backend.versions()), 1)
        self.assertEqual(second["effectiveFrom"], "2024-05-01")
        self.assertEqual(second["groups"][0]["name"], "Daily")

    async def test_tombstones_start_a_new_version(self) -> None:
        await self.backend.save_structure({"groups": [_group("g1", "Habits")], "currentDate": "2024-05-01"})
        await self.backend.save_structure(
            {
                "groups": [_group("g2", "Health")],
                "currentDate": TODAY,
                "deletedElements": {"groups": ["g1"], "fields": [], "fieldTypes": []},
            }
        )
        versions = self.backend.versions()
        self.assertEqual([v["effectiveFrom"] for v in versions], ["2024-05-01", TODAY])
        self.assertEqual([v["isActive"] for v in versions], [False, True])

        self.assertEqual((await self.backend.fetch_structure("2024-05-03"))["groups"][0]["name"], "Habits")
        self.assertEqual((await self.backend.fetch_structure("2024-06-01"))["groups"][0]["name"], "Health")
        self.assertEqual((await self.backend.fetch_structure("2024-01-01"))["groups"][0]["name"], "Habits")

    async def test_fail_next_applies_once(self) -> None:
        self.backend.fail_next("fetch_actions", 503, "Service unavailable")
        with self.assertRaises(SyncError) as ctx:
            await self.backend.fetch_actions()
        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(await self.backend.fetch_actions(), [])


class TestEntriesAndActions(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = MemoryJournalBackend(clock=_clock, id_factory=_ids("s"))

    async def test_save_entry_needs_structure(self) -> None:
        with self.assertRaises(SyncError) as ctx:
            await self.backend.save_entry({"date": TODAY, "values": []})
        self.assertEqual(ctx.exception.status, 400)

    async def test_entries_and_first_date(self) -> None:
        structure = await self.backend.save_structure({"groups": [_group("g1", "Habits")], "currentDate": TODAY})
        self.assertIsNone(await self.backend.fetch_first_entry_date())
        await self.backend.save_entry({"date": "2024-05-09", "values": []})
        saved = await self.backend.save_entry({"date": "2024-05-02", "values": []})
        self.assertEqual(saved["structureId"], structure["structureId"])
        self.assertEqual(await self.backend.fetch_first_entry_date(), "2024-05-02")
        with self.assertRaises(SyncError) as ctx:
            await self.backend.fetch_entry(TODAY)
        self.assertTrue(ctx.exception.not_found)

    async def test_reorder_and_remove(self) -> None:
        ids = []
        for name in ("a", "b", "c"):
            created = await self.backend.create_action({"name": name, "fieldId": name, "options": []})
            ids.append(created["id"])
        await self.backend.reorder_action(ids[2], 0)
        actions = await self.backend.fetch_actions()
        self.assertEqual([a["name"] for a in actions], ["c", "a", "b"])
        self.assertEqual([a["order"] for a in actions], [0, 1, 2])

        await self.backend.remove_action(ids[0])
        self.assertEqual([a["order"] for a in await self.backend.fetch_actions()], [0, 1])
        self.assertEqual(await self.backend.remove_action("missing"), {"success": True})
        with self.assertRaises(SyncError):
            await self.backend.reorder_action("missing", 0)

    async def test_register_applies_to_todays_entry(self) -> None:
        await self.backend.save_structure({"groups": [_group("g1", "Habits", [WATER])], "currentDate": TODAY})
        action = await self.backend.create_action(
            {
                "name": "Drink",
                "fieldId": "f1",
                "options": [{"fieldTypeId": "n1", "isCustom": False, "increment": 2}],
                "isDailyAction": True,
            }
        )
        await self.backend.register_action(action["id"])
        await self.backend.register_action(action["id"])
        entry = await self.backend.fetch_entry(TODAY)
        values = {v["fieldTypeId"]: v["value"] for v in entry["values"]}
        self.assertEqual(values, {"n1": 4, "c1": True})
        self.assertEqual((await self.backend.fetch_actions())[0]["lastTriggeredDate"], TODAY)

    async def test_register_unknown_field(self) -> None:
        await self.backend.save_structure({"groups": [_group("g1", "Habits")], "currentDate": TODAY})
        action = await self.backend.create_action({"name": "Drink", "fieldId": "gone", "options": []})
        with self.assertRaises(SyncError) as ctx:
            await self.backend.register_action(action["id"])
        self.assertEqual(ctx.exception.status, 404)


if __name__ == "__main__":
    unittest.main()
