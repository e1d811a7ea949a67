"""Quick actions: a flat list bound to schema tree leaves by id.

Validation is a pure pass over the raw list and the tree's id maps. The
validated view is cached against the raw list revision and the tree revision,
so it is recomputed exactly when either input changes.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Tuple

from quickjournal.dates import Clock, today_str
from quickjournal.field_kinds import CHECK, is_action_value_kind
from schema_tree import SchemaTree, splice
from sync_boundary import SyncError, action_create_body, normalize_action


logger = logging.getLogger("quickjournal.actions")

Issue = Dict[str, Any]

STRUCTURE_UNAVAILABLE = "Journal structure is not available"
FIELD_MISSING = "The field this action records into no longer exists"
FIELD_TYPE_MISSING = "The field type this action records into no longer exists"


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def bound_field_type_id(action: dict, tree: SchemaTree | None) -> str | None:
    """Field type an action writes into; legacy actions without an option use the CHECK type."""
    option = action.get("option")
    if isinstance(option, dict) and option.get("fieldTypeId"):
        return option["fieldTypeId"]
    if tree is None:
        return None
    return tree.check_type_id(action.get("fieldId"))


def validate_action(action: dict, tree: SchemaTree | None) -> dict:
    if tree is None:
        return {"isValid": False, "invalidReason": STRUCTURE_UNAVAILABLE}
    field_id = action.get("fieldId")
    if not isinstance(field_id, str) or not tree.has_field(field_id):
        return {"isValid": False, "invalidReason": FIELD_MISSING, "missingFieldId": field_id}
    type_id = bound_field_type_id(action, tree)
    if type_id is None or tree.field_of_type(type_id) != field_id:
        return {
            "isValid": False,
            "invalidReason": FIELD_TYPE_MISSING,
            "missingFieldId": field_id,
            "missingFieldTypeId": type_id,
        }
    return {"isValid": True}


def validate_actions(actions: List[dict], tree: SchemaTree | None) -> List[dict]:
    """Return copies of ``actions`` with a fresh ``_validation``; the input is left untouched."""
    validated = []
    for action in actions:
        out = copy.deepcopy(action)
        out["_validation"] = validate_action(action, tree)
        validated.append(out)
    return validated


def is_action_completed_today(action: dict, clock: Clock | None = None) -> bool:
    if not action.get("isDailyAction") or not action.get("lastTriggeredDate"):
        return False
    return action["lastTriggeredDate"] == today_str(clock)


def _densify(actions: List[dict]) -> None:
    for index, action in enumerate(actions):
        action["order"] = index


def _sort_key(entry: Tuple[int, dict]) -> tuple:
    pos, action = entry
    order = action.get("order")
    if isinstance(order, bool) or not isinstance(order, (int, float)):
        order = float("inf")
    return (order, str(action.get("createdAt") or ""), pos)


class ActionRegistry:
    def __init__(self, boundary: Any, *, clock: Clock | None = None) -> None:
        self._boundary = boundary
        self._clock = clock
        self._raw: List[dict] = []
        self._raw_rev = 0
        self._tree: SchemaTree | None = None
        self._cache: List[dict] | None = None
        self._cache_key: tuple | None = None
        self._seq = 0
        self.last_error: Issue | None = None

    # -- inputs -------------------------------------------------------------

    def set_structure(self, tree: SchemaTree | None) -> None:
        self._tree = tree

    def set_actions(self, actions: List[dict]) -> None:
        ordered = [a for _, a in sorted(enumerate(normalize_action(a) for a in actions), key=_sort_key)]
        _densify(ordered)
        self._raw = ordered
        self._changed()

    def _changed(self) -> None:
        self._raw_rev += 1
        # Any local change supersedes fetches already in flight.
        self._seq += 1

    def _fail(self, code: str, message: str, path: str | None = None, detail: dict | None = None) -> None:
        self.last_error = _issue(code, message, path, detail)
        logger.info("action_op_rejected code=%s message=%s", code, message)

    def _find(self, action_id: str) -> int | None:
        for index, action in enumerate(self._raw):
            if action.get("id") == action_id:
                return index
        return None

    # -- validated view -----------------------------------------------------

    def _validated(self) -> List[dict]:
        tree = self._tree
        key = (self._raw_rev, tree, tree.revision if tree is not None else None)
        if self._cache is None or not self._same_key(key):
            self._cache = validate_actions(self._raw, tree)
            self._cache_key = key
        return self._cache

    def _same_key(self, key: tuple) -> bool:
        rev, tree, tree_rev = self._cache_key  # type: ignore[misc]
        return rev == key[0] and tree is key[1] and tree_rev == key[2]

    @property
    def actions(self) -> List[dict]:
        return copy.deepcopy(self._validated())

    @property
    def raw_actions(self) -> List[dict]:
        return copy.deepcopy(self._raw)

    def get_action(self, action_id: str) -> dict | None:
        for action in self._validated():
            if action.get("id") == action_id:
                return copy.deepcopy(action)
        return None

    def valid_actions(self) -> List[dict]:
        return [a for a in self.actions if a["_validation"]["isValid"]]

    def invalid_actions(self) -> List[dict]:
        return [a for a in self.actions if not a["_validation"]["isValid"]]

    def get_eligible_fields(self) -> List[dict]:
        """Fields an action can be created for, with only their eligible types.

        A field qualifies with a NUMBER, NUMBER_NAVIGATION or TIME_SELECT type,
        or when its only type is CHECK. Fields already bound to an action are
        left out.
        """
        tree = self._tree
        if tree is None:
            return []
        bound = {a.get("fieldId") for a in self._raw}
        eligible = []
        for group, field in tree.walk_fields():
            if field["id"] in bound:
                continue
            types = field["fieldTypes"]
            picked = [
                ft
                for ft in types
                if is_action_value_kind(ft["kind"]) or (ft["kind"] == CHECK and len(types) == 1)
            ]
            if not picked:
                continue
            eligible.append(
                {
                    "groupId": group["id"],
                    "groupName": group["name"],
                    "fieldId": field["id"],
                    "fieldName": field["name"],
                    "fieldTypes": [
                        {
                            "id": ft["id"],
                            "kind": ft["kind"],
                            "description": ft.get("description"),
                            "dataOptions": ft.get("dataOptions", {}),
                        }
                        for ft in picked
                    ],
                }
            )
        return eligible

    def get_action_details(self, action: dict, entry: dict | None = None) -> dict | None:
        tree = self._tree
        if tree is None:
            return None
        field = tree.get_field(action.get("fieldId"))
        type_id = bound_field_type_id(action, tree)
        field_type = tree.get_field_type(type_id) if type_id else None
        if field_type is not None and field is not None and field_type["fieldId"] != field["id"]:
            field_type = None
        current = None
        if entry:
            for value in entry.get("values") or []:
                if value.get("fieldId") == action.get("fieldId") and value.get("fieldTypeId") == type_id:
                    current = value.get("value")
        option = action.get("option") or {}
        return {
            "fieldName": field["name"] if field else "",
            "fieldTypeName": (field_type.get("description") or "") if field_type else "",
            "fieldTypeKind": field_type["kind"] if field_type else None,
            "fieldTypeDataOptions": field_type.get("dataOptions") if field_type else None,
            "currentValue": current,
            "incrementValue": option.get("increment"),
            "isCustom": bool(option.get("isCustom", False)),
        }

    def is_action_completed_today(self, action: dict) -> bool:
        return is_action_completed_today(action, self._clock)

    # -- boundary operations ------------------------------------------------

    async def fetch_actions(self) -> List[dict] | None:
        self._seq += 1
        seq = self._seq
        try:
            raw = await self._boundary.fetch_actions()
        except SyncError as exc:
            if seq == self._seq:
                self._fail("SYNC_FAILED", "Failed to fetch actions", detail={"status": exc.status, "error": exc.message})
            logger.warning("actions_fetch_failed status=%s error=%s", exc.status, exc.message)
            return None
        if seq != self._seq:
            self._fail("STALE_RESPONSE", "A newer request or edit superseded this fetch")
            logger.info("actions_fetch_discarded seq=%s latest=%s", seq, self._seq)
            return None
        if not isinstance(raw, list):
            self._fail("SYNC_FAILED", "Failed to fetch actions", detail={"error": "expected a list"})
            return None
        self.set_actions([a for a in raw if isinstance(a, dict)])
        self.last_error = None
        logger.info("actions_loaded count=%s", len(self._raw))
        return self.actions

    async def create_action(
        self,
        name: str,
        field_id: str,
        field_type_id: str,
        increment_value: int | float | None = None,
        is_daily_action: bool = False,
    ) -> dict | None:
        tree = self._tree
        if tree is None:
            self._fail("NO_STRUCTURE", "No journal exists")
            return None
        if not isinstance(name, str) or not name.strip():
            self._fail("INVALID_ACTION", "Action name is required", "name")
            return None
        if increment_value is not None and not _is_number(increment_value):
            self._fail("INVALID_ACTION", "increment must be a number", "incrementValue")
            return None
        if not tree.has_field(field_id):
            self._fail("FIELD_NOT_FOUND", "Field not found", "fieldId")
            return None
        if tree.field_of_type(field_type_id) != field_id:
            self._fail("FIELD_TYPE_NOT_FOUND", "Field type not found", "fieldTypeId")
            return None
        if any(a.get("fieldId") == field_id for a in self._raw):
            self._fail("FIELD_ALREADY_BOUND", "Field already has an action", "fieldId")
            return None

        body = action_create_body(name.strip(), field_id, field_type_id, increment_value, is_daily_action)
        try:
            created = await self._boundary.create_action(body)
        except SyncError as exc:
            self._fail("SYNC_FAILED", "Failed to create action", detail={"status": exc.status, "error": exc.message})
            return None
        action = normalize_action(created)
        self._raw.append(action)
        _densify(self._raw)
        self._changed()
        self.last_error = None
        logger.info("action_created action_id=%s field_id=%s custom=%s", action.get("id"), field_id, increment_value is None)
        return self.get_action(action.get("id"))

    async def delete_action(self, action_id: str) -> bool:
        if self._find(action_id) is None:
            self._fail("ACTION_NOT_FOUND", "Action not found", "id")
            return False
        try:
            await self._boundary.remove_action(action_id)
        except SyncError as exc:
            self._fail("SYNC_FAILED", "Failed to delete action", detail={"status": exc.status, "error": exc.message})
            return False
        index = self._find(action_id)
        if index is not None:
            del self._raw[index]
            _densify(self._raw)
            self._changed()
        self.last_error = None
        logger.info("action_deleted action_id=%s", action_id)
        return True

    async def update_action_order(self, action_id: str, new_order: int, valid_only: bool = False) -> bool:
        """Move an action to ``new_order`` and reindex the list.

        With ``valid_only`` the index counts only currently-valid actions and
        invalid actions keep their slots. The move is applied locally first,
        rolled back if the boundary rejects it, and replaced by the boundary's
        list once it succeeds.
        """
        if self._find(action_id) is None:
            self._fail("ACTION_NOT_FOUND", "Action not found", "id")
            return False
        if isinstance(new_order, bool) or not isinstance(new_order, int):
            self._fail("INVALID_INDEX", "order must be an integer", "order")
            return False

        by_id = {a["id"]: a for a in self._raw}
        if valid_only:
            valid_ids = [a["id"] for a in self._validated() if a["_validation"]["isValid"]]
            if action_id not in valid_ids:
                self._fail("ACTION_INVALID", "Only valid actions can be moved among valid actions", "id")
                return False
            valid_set = set(valid_ids)
            slots = [i for i, a in enumerate(self._raw) if a["id"] in valid_set]
            splice(valid_ids, action_id, new_order)
            reordered = list(self._raw)
            for slot, moved_id in zip(slots, valid_ids):
                reordered[slot] = by_id[moved_id]
        else:
            ids = [a["id"] for a in self._raw]
            splice(ids, action_id, new_order)
            reordered = [by_id[i] for i in ids]

        snapshot = copy.deepcopy(self._raw)
        self._raw = reordered
        _densify(self._raw)
        self._changed()
        position = self._find(action_id)
        try:
            await self._boundary.reorder_action(action_id, position)
        except SyncError as exc:
            self._raw = snapshot
            self._changed()
            self._fail("SYNC_FAILED", "Failed to reorder action", detail={"status": exc.status, "error": exc.message})
            return False
        logger.info("action_reordered action_id=%s order=%s", action_id, position)
        await self.fetch_actions()
        return True

    def check_registrable(self, action_id: str, value: Any = None) -> Issue | None:
        action = self.get_action(action_id)
        if action is None:
            return _issue("ACTION_NOT_FOUND", "Action not found", "id")
        validation = action["_validation"]
        if not validation["isValid"]:
            return _issue("ACTION_INVALID", validation.get("invalidReason", "Action is invalid"), "id", validation)
        if self.is_action_completed_today(action):
            return _issue("ACTION_COMPLETED_TODAY", "Daily action already completed today", "id")
        option = action.get("option") or {}
        if option.get("isCustom") and value is None:
            return _issue("VALUE_REQUIRED", "This action needs a value", "value")
        return None

    async def register_action(self, action_id: str, value: Any = None) -> bool:
        issue = self.check_registrable(action_id, value)
        if issue is not None:
            self.last_error = issue
            logger.info("action_register_rejected code=%s action_id=%s", issue["code"], action_id)
            return False
        index = self._find(action_id)
        option = self._raw[index].get("option") or {}
        try:
            await self._boundary.register_action(action_id, value if option.get("isCustom") else None)
        except SyncError as exc:
            self._fail("SYNC_FAILED", "Failed to register action", detail={"status": exc.status, "error": exc.message})
            return False
        index = self._find(action_id)
        if index is not None and self._raw[index].get("isDailyAction"):
            self._raw[index]["lastTriggeredDate"] = today_str(self._clock)
            self._changed()
        self.last_error = None
        logger.info("action_registered action_id=%s", action_id)
        return True
