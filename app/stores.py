"""In-memory synchronization boundary for tests and local sessions."""

from __future__ import annotations

import asyncio
import copy
import uuid
from typing import Any, Callable, Dict, List

from entry_editor import apply_action_to_entry, empty_entry
from quickjournal.dates import Clock, is_valid_date, timestamp, today_str
from schema_tree import splice
from sync_boundary import SyncError, has_tombstones, normalize_action


def _new_id() -> str:
    return str(uuid.uuid4())


class MemoryJournalBackend:
    """Versioned structures, per-date entries and actions, kept in dicts.

    Structures are keyed by ``effectiveFrom``. A save carrying tombstones
    retires the active version and stores a new one effective from
    ``currentDate``; a save without tombstones rewrites the active version.

    ``fail_next`` and ``hold`` let tests inject a failure into, or pause, the
    next call of a given method.
    """

    def __init__(self, *, clock: Clock | None = None, id_factory: Callable[[], str] | None = None) -> None:
        self._clock = clock
        self._new_id = id_factory or _new_id
        self._structures: Dict[str, dict] = {}
        self._entries: Dict[str, dict] = {}
        self._actions: List[dict] = []
        self._failures: Dict[str, SyncError] = {}
        self._holds: Dict[str, asyncio.Event] = {}
        self.calls: List[tuple] = []

    # -- test hooks ---------------------------------------------------------

    def fail_next(self, method: str, status: int | None = 500, message: str = "Injected failure") -> None:
        self._failures[method] = SyncError(message, status)

    def hold(self, method: str) -> asyncio.Event:
        event = asyncio.Event()
        self._holds[method] = event
        return event

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *copy.deepcopy(args)))
        event = self._holds.pop(method, None)
        if event is not None:
            await event.wait()
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    # -- structures ---------------------------------------------------------

    def _active(self) -> dict | None:
        for structure in self._structures.values():
            if structure.get("isActive"):
                return structure
        return None

    def versions(self) -> List[dict]:
        return [copy.deepcopy(self._structures[k]) for k in sorted(self._structures)]

    async def fetch_structure(self, date: str) -> dict:
        await self._enter("fetch_structure", date)
        if not is_valid_date(date):
            raise SyncError("Invalid date format. Expected YYYY-MM-DD.", 400)
        if not self._structures:
            raise SyncError("No structure found.", 404)
        newest_first = sorted(self._structures, reverse=True)
        for effective in newest_first:
            if effective <= date:
                return copy.deepcopy(self._structures[effective])
        return copy.deepcopy(self._structures[newest_first[-1]])

    async def save_structure(self, body: dict) -> dict:
        await self._enter("save_structure", body)
        current = body.get("currentDate")
        effective = current if is_valid_date(current) else today_str(self._clock)
        now = timestamp(self._clock)
        groups = copy.deepcopy(body.get("groups") or [])
        active = self._active()
        if active is not None and not has_tombstones(body.get("deletedElements")):
            active["groups"] = groups
            active["updatedAt"] = now
            return copy.deepcopy(active)
        if active is not None:
            active["isActive"] = False
            active["updatedAt"] = now
        structure = {
            "structureId": self._new_id(),
            "isActive": True,
            "effectiveFrom": effective,
            "groups": groups,
            "createdAt": now,
            "updatedAt": now,
        }
        self._structures[effective] = structure
        return copy.deepcopy(structure)

    # -- entries ------------------------------------------------------------

    async def fetch_entry(self, date: str) -> dict:
        await self._enter("fetch_entry", date)
        if not is_valid_date(date):
            raise SyncError("Invalid date format. Expected YYYY-MM-DD.", 400)
        entry = self._entries.get(date)
        if entry is None:
            raise SyncError("No entry found.", 404)
        return copy.deepcopy(entry)

    async def save_entry(self, entry: dict) -> dict:
        await self._enter("save_entry", entry)
        date = entry.get("date")
        if not is_valid_date(date):
            raise SyncError("Invalid date format. Expected YYYY-MM-DD.", 400)
        active = self._active()
        if active is None:
            raise SyncError("No active journal structure found. Please create a structure first.", 400)
        return copy.deepcopy(self._store_entry(entry, active["structureId"]))

    def _store_entry(self, entry: dict, structure_id: str) -> dict:
        now = timestamp(self._clock)
        existing = self._entries.get(entry["date"])
        stored = copy.deepcopy(entry)
        stored["structureId"] = structure_id
        stored["createdAt"] = existing["createdAt"] if existing else entry.get("createdAt") or now
        stored["updatedAt"] = now
        self._entries[entry["date"]] = stored
        return stored

    async def fetch_first_entry_date(self) -> str | None:
        await self._enter("fetch_first_entry_date")
        return min(self._entries) if self._entries else None

    # -- actions ------------------------------------------------------------

    def _action_index(self, action_id: str) -> int | None:
        for index, action in enumerate(self._actions):
            if action.get("id") == action_id:
                return index
        return None

    def _reindex_actions(self) -> None:
        for index, action in enumerate(self._actions):
            action["order"] = index

    async def fetch_actions(self) -> list:
        await self._enter("fetch_actions")
        return copy.deepcopy(self._actions)

    async def create_action(self, body: dict) -> dict:
        await self._enter("create_action", body)
        action = {
            "id": self._new_id(),
            "name": body.get("name"),
            "description": body.get("description", ""),
            "fieldId": body.get("fieldId"),
            "options": [
                {
                    "id": self._new_id(),
                    "fieldTypeId": opt.get("fieldTypeId"),
                    "isCustom": bool(opt.get("isCustom")),
                    **({"increment": opt["increment"]} if opt.get("increment") is not None else {}),
                }
                for opt in body.get("options") or []
            ],
            "isDailyAction": bool(body.get("isDailyAction", False)),
            "order": len(self._actions),
            "createdAt": timestamp(self._clock),
        }
        self._actions.append(action)
        return copy.deepcopy(action)

    async def remove_action(self, action_id: str) -> dict:
        await self._enter("remove_action", action_id)
        index = self._action_index(action_id)
        if index is not None:
            del self._actions[index]
            self._reindex_actions()
        return {"success": True}

    async def reorder_action(self, action_id: str, order: int) -> dict:
        await self._enter("reorder_action", action_id, order)
        if self._action_index(action_id) is None:
            raise SyncError("Action not found.", 404)
        by_id = {a["id"]: a for a in self._actions}
        ids = [a["id"] for a in self._actions]
        splice(ids, action_id, order)
        self._actions = [by_id[i] for i in ids]
        self._reindex_actions()
        self._actions[self._action_index(action_id)]["updatedAt"] = timestamp(self._clock)
        return {"success": True}

    async def register_action(self, action_id: str, value: Any = None) -> dict:
        await self._enter("register_action", action_id, value)
        index = self._action_index(action_id)
        if index is None:
            raise SyncError("Action not found.", 404)
        active = self._active()
        if active is None:
            raise SyncError("Journal structure not found.", 404)
        action = normalize_action(self._actions[index])
        located = None
        for group in active.get("groups") or []:
            for field in group.get("fields") or []:
                if field.get("id") == action["fieldId"]:
                    located = (group["id"], field)
        if located is None:
            raise SyncError("Field not found in structure.", 404)

        today = today_str(self._clock)
        entry = self._entries.get(today) or empty_entry(today, self._clock)
        group_id, field = located
        self._store_entry(apply_action_to_entry(entry, action, field, group_id, value, self._clock), active["structureId"])
        if action["isDailyAction"]:
            self._actions[index]["lastTriggeredDate"] = today
        return {"success": True}
