import asyncio
import itertools
import os
import sys
import unittest
from datetime import datetime, timezone
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from action_registration import CANCELED, COMMITTED, DEFAULT_DELAY_MS, IDLE, PENDING, RegistrationProtocol
from action_registry import ActionRegistry
from app.stores import MemoryJournalBackend
from schema_tree import SchemaTree


TODAY = "2024-05-10"


def _clock() -> datetime:
    return datetime(2024, 5, 10, 8, 45, tzinfo=timezone.utc)


def _ids(prefix: str):
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


class TestRegistrationProtocol(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = MemoryJournalBackend(clock=_clock, id_factory=_ids("s"))
        self.tree = SchemaTree(clock=_clock, id_factory=_ids("n"))
        group_id = self.tree.add_group("Habits")
        self.water = self.tree.add_field(group_id, "Water")
        self.sleep = self.tree.add_field(group_id, "Sleep")
        self.sleep_hours = self.tree.add_field_type(self.sleep, "NUMBER", "hours")
        await self.backend.save_structure({"groups": self.tree.groups(), "currentDate": TODAY})
        self.registry = ActionRegistry(self.backend, clock=_clock)
        self.registry.set_structure(self.tree)
        drink = await self.registry.create_action("Drink", self.water, self.tree.check_type_id(self.water), 1)
        self.drink = drink["id"]

    def _registrations(self) -> list:
        return [c for c in self.backend.calls if c[0] == "register_action"]

    async def test_countdown_commits(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=20)
        pending = protocol.trigger(self.drink)
        self.assertIsNotNone(pending)
        self.assertEqual(protocol.state, PENDING)
        self.assertTrue(await protocol.wait())
        self.assertEqual(protocol.state, COMMITTED)
        self.assertIsNone(protocol.pending)
        self.assertEqual(len(self._registrations()), 1)

    async def test_confirm_commits_before_countdown(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        protocol.trigger(self.drink)
        self.assertTrue(await protocol.confirm())
        self.assertEqual(protocol.state, COMMITTED)
        self.assertEqual(len(self._registrations()), 1)

    async def test_confirm_racing_expiry_commits_once(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=0)
        protocol.trigger(self.drink)
        self.assertTrue(await protocol.confirm())
        await asyncio.sleep(0)
        self.assertEqual(len(self._registrations()), 1)

    async def test_cancel_never_registers(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        protocol.trigger(self.drink)
        self.assertTrue(protocol.cancel())
        self.assertEqual(protocol.state, CANCELED)
        await asyncio.sleep(0)
        self.assertFalse(await protocol.wait())
        self.assertEqual(self._registrations(), [])
        self.assertFalse(protocol.cancel())
        self.assertEqual(protocol.last_error["code"], "NO_PENDING_REGISTRATION")

    async def test_single_pending_registration(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        protocol.trigger(self.drink)
        self.assertIsNone(protocol.trigger(self.drink))
        self.assertEqual(protocol.last_error["code"], "REGISTRATION_PENDING")
        protocol.cancel()

    async def test_trigger_rejections(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        self.assertIsNone(protocol.trigger("missing"))
        self.assertEqual(protocol.last_error["code"], "ACTION_NOT_FOUND")
        self.assertEqual(protocol.state, IDLE)

        sleep = await self.registry.create_action("Sleep", self.sleep, self.sleep_hours)
        self.assertIsNone(protocol.trigger(sleep["id"]))
        self.assertEqual(protocol.last_error["code"], "VALUE_REQUIRED")
        self.assertIsNotNone(protocol.trigger(sleep["id"], 8))
        self.assertTrue(await protocol.confirm())
        self.assertIn(("register_action", sleep["id"], 8), self.backend.calls)

    async def test_completed_daily_action_is_rejected(self) -> None:
        await self.registry.delete_action(self.drink)
        daily = await self.registry.create_action(
            "Drink", self.water, self.tree.check_type_id(self.water), 1, is_daily_action=True
        )
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        protocol.trigger(daily["id"])
        self.assertTrue(await protocol.confirm())
        self.assertIsNone(protocol.trigger(daily["id"]))
        self.assertEqual(protocol.last_error["code"], "ACTION_COMPLETED_TODAY")

    async def test_failed_commit_returns_to_idle(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        protocol.trigger(self.drink)
        self.backend.fail_next("register_action")
        self.assertFalse(await protocol.confirm())
        self.assertEqual(protocol.state, IDLE)
        self.assertIsNone(protocol.pending)
        self.assertEqual(protocol.last_error["code"], "SYNC_FAILED")

    async def test_commit_rechecks_validity(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        protocol.trigger(self.drink)
        self.tree.remove_field(self.water)
        self.assertFalse(await protocol.confirm())
        self.assertEqual(protocol.last_error["code"], "ACTION_INVALID")
        self.assertEqual(self._registrations(), [])

    async def test_confirm_without_pending(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=60_000)
        self.assertFalse(await protocol.confirm())
        self.assertEqual(protocol.last_error["code"], "NO_PENDING_REGISTRATION")

    async def test_time_left(self) -> None:
        protocol = RegistrationProtocol(self.registry, delay_ms=10_000)
        self.assertEqual(protocol.time_left_ms(), 0)
        protocol.trigger(self.drink)
        left = protocol.time_left_ms()
        self.assertGreater(left, 9_000)
        self.assertLessEqual(left, 10_000)
        protocol.cancel()

    async def test_on_committed_callback(self) -> None:
        seen = []

        async def committed(action_id: str) -> None:
            seen.append(action_id)

        protocol = RegistrationProtocol(self.registry, delay_ms=60_000, on_committed=committed)
        protocol.trigger(self.drink)
        await protocol.confirm()
        self.assertEqual(seen, [self.drink])

    async def test_delay_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"JOURNAL_REGISTER_DELAY_MS": "250"}):
            self.assertEqual(RegistrationProtocol(self.registry).delay_ms, 250)
        with mock.patch.dict(os.environ, {"JOURNAL_REGISTER_DELAY_MS": "soon"}):
            with self.assertLogs("quickjournal.registration", level="WARNING"):
                self.assertEqual(RegistrationProtocol(self.registry).delay_ms, DEFAULT_DELAY_MS)
        self.assertEqual(RegistrationProtocol(self.registry, delay_ms=-5).delay_ms, 0)


if __name__ == "__main__":
    unittest.main()
