"""Synchronization boundary contract shared by the HTTP client and the in-memory backend.

A boundary is any object exposing these coroutines:

    fetch_structure(date) -> Journal               (SyncError status 404 = none)
    save_structure(body) -> Journal
    fetch_entry(date) -> JournalEntry
    save_entry(entry) -> JournalEntry
    fetch_first_entry_date() -> str | None
    fetch_actions() -> list[Action]
    create_action(body) -> Action
    remove_action(action_id) -> {"success": bool}
    register_action(action_id, value=None) -> {"success": bool}
    reorder_action(action_id, order) -> {"success": bool}

Every failure is raised as ``SyncError``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, List


API = "/api/v1"
JOURNAL_API = f"{API}/journal"

ROUTE_STRUCTURE = f"{JOURNAL_API}/structure"
ROUTE_ENTRIES = f"{JOURNAL_API}/entries"
ROUTE_FIRST_ENTRY_DATE = f"{JOURNAL_API}/first-entry-date"
ROUTE_ACTIONS = f"{JOURNAL_API}/actions"
ROUTE_ACTION_ADD = f"{JOURNAL_API}/actions/add"
ROUTE_ACTION_REMOVE = f"{JOURNAL_API}/actions/remove"
ROUTE_ACTION_REGISTER = f"{JOURNAL_API}/actions/register"
ROUTE_ACTION_REORDER = f"{JOURNAL_API}/actions/reorder"

TOMBSTONE_KINDS = ("groups", "fields", "fieldTypes")


@dataclass
class SyncError(Exception):
    message: str
    status: int | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.status}: {self.message}" if self.status is not None else self.message

    @property
    def not_found(self) -> bool:
        return self.status == 404


def empty_tombstones() -> Dict[str, List[str]]:
    return {kind: [] for kind in TOMBSTONE_KINDS}


def has_tombstones(deleted: Dict[str, List[str]] | None) -> bool:
    if not deleted:
        return False
    return any(deleted.get(kind) for kind in TOMBSTONE_KINDS)


def structure_save_body(groups: List[dict], current_date: str, deleted: Dict[str, List[str]] | None = None) -> dict:
    body: dict = {"groups": copy.deepcopy(groups), "currentDate": current_date}
    if has_tombstones(deleted):
        body["deletedElements"] = {kind: list(deleted.get(kind) or []) for kind in TOMBSTONE_KINDS}
    return body


def action_create_body(
    name: str,
    field_id: str,
    field_type_id: str,
    increment: int | float | None = None,
    is_daily_action: bool = False,
    description: str = "",
) -> dict:
    is_custom = increment is None
    option: dict = {"fieldTypeId": field_type_id, "isCustom": is_custom}
    if not is_custom:
        option["increment"] = increment
    return {
        "name": name,
        "description": description,
        "fieldId": field_id,
        "options": [option],
        "isDailyAction": bool(is_daily_action),
    }


def normalize_action(raw: dict) -> dict:
    """Return a local Action record with a single ``option``.

    The backend stores ``options`` as a list; only the first entry binds the
    action. Derived ``_validation`` data is never kept.
    """
    action = {k: copy.deepcopy(v) for k, v in raw.items() if k not in ("options", "option", "_validation")}
    option = raw.get("option")
    if option is None:
        options = raw.get("options")
        if isinstance(options, list) and options:
            option = options[0]
    if isinstance(option, dict):
        option = copy.deepcopy(option)
        option["isCustom"] = bool(option.get("isCustom", option.get("increment") is None))
        action["option"] = option
    else:
        action["option"] = None
    action["isDailyAction"] = bool(raw.get("isDailyAction", False))
    action.setdefault("description", "")
    return action

